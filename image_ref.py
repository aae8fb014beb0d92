"""Image reference parsing.

Splits an image string such as ``ghcr.io/esphome/esphome:2024.6`` into
registry host, namespace, repository name and tag.  The registry host is only
ever taken from the third-from-last path segment, so mirrored references like
``m.daocloud.io/ghcr.io/esphome/esphome`` still resolve to the upstream host.
"""

from dataclasses import dataclass

DEFAULT_REGISTRY = "docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"


@dataclass(frozen=True)
class ImageReference:
    """A parsed image reference."""
    registry: str
    namespace: str
    name: str
    tag: str
    path: str

    @property
    def repository(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def image(self) -> str:
        """Image path plus tag, as shown in reports."""
        return f"{self.path}:{self.tag}"


def parse_image_reference(image: str) -> ImageReference:
    """
    Parse an image string into an ImageReference.

    Never fails; whether the registry is supported is decided later by the
    resolver.

    Args:
        image: Image string (e.g. 'postgres:16.2', 'linuxserver/sonarr',
               'mirror.example/ghcr.io/org/repo:1.0')

    Returns:
        ImageReference
    """
    # Strip digest qualifier (@sha256:...)
    at_pos = image.find('@')
    if at_pos != -1:
        image = image[:at_pos]

    # Only a colon after the last slash is a tag; earlier ones are registry ports
    tag = DEFAULT_TAG
    last_slash = image.rfind('/')
    last_colon = image.rfind(':')
    if last_colon > last_slash:
        image, tag = image[:last_colon], image[last_colon + 1:] or DEFAULT_TAG

    parts = image.split('/')
    name = parts[-1]
    namespace = parts[-2] if len(parts) >= 2 else DEFAULT_NAMESPACE
    registry = parts[-3] if len(parts) >= 3 else DEFAULT_REGISTRY

    return ImageReference(
        registry=registry,
        namespace=namespace,
        name=name,
        tag=tag,
        path=image,
    )
