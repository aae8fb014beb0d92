"""
Registry resolvers for Docker Hub and GitHub Container Registry.

Each resolver turns an ImageReference (plus, for GHCR, the digest recorded
locally) into a normalized ImageInfo.  Results are memoized in a RunCache
that lives for a single run only.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

import jsonschema
import requests

from image_ref import ImageReference

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30

DOCKER_HUB_TAG_URL = "https://registry.hub.docker.com/v2/repositories/{namespace}/{name}/tags/{tag}"
GHCR_VERSIONS_URL = "https://api.github.com/orgs/{namespace}/packages/container/{name}/versions"
GHCR_PAGE_SIZE = 100
GITHUB_API_VERSION = "2022-11-28"

# Docker Hub tag detail: only the fields we read are constrained
DOCKER_HUB_TAG_SCHEMA = {
    "type": "object",
    "properties": {
        "digest": {"type": ["string", "null"]},
        "images": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "digest": {"type": ["string", "null"]},
                    "os": {"type": ["string", "null"]},
                    "architecture": {"type": ["string", "null"]},
                    "variant": {"type": ["string", "null"]}
                }
            }
        }
    },
    "required": ["images"]
}

# One page of GHCR package versions
GHCR_VERSIONS_SCHEMA = {
    "type": "array",
    "items": {
        "type": "object",
        "properties": {
            "name": {"type": "string"},
            "url": {"type": "string"},
            "metadata": {
                "type": "object",
                "properties": {
                    "container": {
                        "type": "object",
                        "properties": {
                            "tags": {"type": "array", "items": {"type": "string"}}
                        }
                    }
                }
            }
        },
        "required": ["name"]
    }
}


class RegistryError(Exception):
    """Base class for failures while resolving an image against a registry."""


class UnsupportedRegistry(RegistryError):
    pass


class MissingCredential(RegistryError):
    pass


class NetworkError(RegistryError):
    pass


class MalformedResponse(RegistryError):
    pass


class NoMatchingVersions(RegistryError):
    pass


class ArchitectureMismatch(RegistryError):
    pass


@dataclass(frozen=True)
class PlatformDigest:
    """Digest of one platform entry of a multi-arch image."""
    digest: str
    os: str
    architecture: str
    variant: str = ''


@dataclass
class ImageInfo:
    """Normalized registry answer for one image tag."""
    digest: str = ''
    platform_digests: List[PlatformDigest] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)


class RunCache:
    """Write-once, read-through lookup table scoped to a single run.

    GHCR digest lookups add the expected digest to the key: two containers on
    the same tag can hold different digests, and each gets the tags of its own.
    """

    def __init__(self):
        self._entries: Dict[str, ImageInfo] = {}

    @staticmethod
    def key(reference: ImageReference, expected_digest: Optional[str] = None) -> str:
        key = f"{reference.registry}/{reference.repository}:{reference.tag}"
        if expected_digest:
            key += f"@{expected_digest}"
        return key

    def get(self, key: str) -> Optional[ImageInfo]:
        return self._entries.get(key)

    def put(self, key: str, info: ImageInfo) -> ImageInfo:
        """Store info under key unless already present; return the stored value."""
        return self._entries.setdefault(key, info)

    def __len__(self) -> int:
        return len(self._entries)


class RegistryResolver:
    """Common cache handling; subclasses implement _fetch for one registry."""

    def __init__(self, session: requests.Session, cache: RunCache):
        self.session = session
        self.cache = cache

    def resolve(self, reference: ImageReference, expected_digest: Optional[str] = None) -> ImageInfo:
        """
        Resolve an image reference to an ImageInfo.

        Args:
            reference: Parsed image reference
            expected_digest: Digest recorded locally, used by digest-keyed registries

        Returns:
            ImageInfo (served from the run cache when already resolved)

        Raises:
            RegistryError subclass on any failure
        """
        key = RunCache.key(reference, self._cache_digest(expected_digest))
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Cache hit for %s", key)
            return cached

        info = self._fetch(reference, expected_digest)
        return self.cache.put(key, info)

    def _cache_digest(self, expected_digest: Optional[str]) -> Optional[str]:
        return None

    def _fetch(self, reference: ImageReference, expected_digest: Optional[str]) -> ImageInfo:
        raise NotImplementedError

    def _get_json(self, url: str, what: str, **kwargs):
        try:
            response = self.session.get(url, timeout=REQUEST_TIMEOUT, **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            raise NetworkError(f"Error getting {what}: {e}") from e

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponse(f"Error decoding {what}: {e}") from e


class DockerHubResolver(RegistryResolver):
    """Docker Hub tag-detail lookups (digest plus per-platform digests)."""

    def _fetch(self, reference: ImageReference, expected_digest: Optional[str]) -> ImageInfo:
        url = DOCKER_HUB_TAG_URL.format(
            namespace=reference.namespace, name=reference.name, tag=reference.tag
        )
        what = f"{reference.repository}:{reference.tag} from Docker Hub"
        logger.debug("GET %s", url)
        data = self._get_json(url, what)

        try:
            jsonschema.validate(data, DOCKER_HUB_TAG_SCHEMA)
        except jsonschema.ValidationError as e:
            raise MalformedResponse(f"Unexpected response for {what}: {e.message}") from e

        images = data['images']
        if not images:
            raise MalformedResponse(f"No platform images listed for {what}")

        return ImageInfo(
            digest=data.get('digest') or '',
            platform_digests=[
                PlatformDigest(
                    digest=img.get('digest') or '',
                    os=img.get('os') or '',
                    architecture=img.get('architecture') or '',
                    variant=img.get('variant') or '',
                )
                for img in images
            ],
        )


class GHCRResolver(RegistryResolver):
    """
    GitHub Container Registry lookups through the GitHub packages API.

    The versions listing is keyed by digest and one digest may carry several
    tags, so a locally recorded digest is matched exactly and the caller
    inspects the tags that come back with it.
    """

    def __init__(self, session: requests.Session, cache: RunCache, token: Optional[str]):
        super().__init__(session, cache)
        self.token = token

    def resolve(self, reference: ImageReference, expected_digest: Optional[str] = None) -> ImageInfo:
        if not self.token:
            raise MissingCredential(f"A GHCR token is required to check {reference.image}")
        return super().resolve(reference, expected_digest)

    def _cache_digest(self, expected_digest: Optional[str]) -> Optional[str]:
        return expected_digest

    def _headers(self) -> Dict[str, str]:
        return {
            'Accept': 'application/vnd.github+json',
            'Authorization': f'Bearer {self.token}',
            'X-GitHub-Api-Version': GITHUB_API_VERSION,
        }

    def _iter_versions(self, reference: ImageReference) -> Iterator[dict]:
        """Yield version entries page by page until the listing runs out."""
        url = GHCR_VERSIONS_URL.format(namespace=reference.namespace, name=reference.name)
        page = 1
        while True:
            what = f"page {page} of {reference.repository} versions from GHCR"
            logger.debug("GET %s page=%d", url, page)
            versions = self._get_json(
                url,
                what,
                headers=self._headers(),
                params={'page': page, 'per_page': GHCR_PAGE_SIZE},
            )

            try:
                jsonschema.validate(versions, GHCR_VERSIONS_SCHEMA)
            except jsonschema.ValidationError as e:
                raise MalformedResponse(f"Unexpected response for {what}: {e.message}") from e

            if not versions:
                if page == 1:
                    raise NoMatchingVersions(f"No versions published for {reference.repository}")
                return

            yield from versions

            if len(versions) < GHCR_PAGE_SIZE:
                return
            page += 1

    @staticmethod
    def _tags_of(version: dict) -> List[str]:
        return list(((version.get('metadata') or {}).get('container') or {}).get('tags') or [])

    def _fetch(self, reference: ImageReference, expected_digest: Optional[str]) -> ImageInfo:
        for version in self._iter_versions(reference):
            tags = self._tags_of(version)
            if expected_digest:
                matched = version['name'] == expected_digest
            else:
                matched = reference.tag in tags
            if matched:
                return ImageInfo(digest=version['name'], tags=tags)

        if expected_digest:
            raise NoMatchingVersions(
                f"No version of {reference.repository} has digest {expected_digest}"
            )
        raise NoMatchingVersions(f"No version of {reference.repository} is tagged {reference.tag}")


class UnsupportedRegistryResolver(RegistryResolver):
    """Fallback for registries we cannot query."""

    def __init__(self, registry: str):
        self.registry = registry

    def resolve(self, reference: ImageReference, expected_digest: Optional[str] = None) -> ImageInfo:
        raise UnsupportedRegistry(f"Registry {self.registry} is not supported ({reference.image})")


def build_resolvers(session: requests.Session, cache: RunCache,
                    ghcr_token: Optional[str] = None) -> Dict[str, RegistryResolver]:
    """Build the registry host -> resolver table for one run."""
    return {
        'docker.io': DockerHubResolver(session, cache),
        'ghcr.io': GHCRResolver(session, cache, ghcr_token),
        'gcr.io': UnsupportedRegistryResolver('gcr.io'),
        'quay.io': UnsupportedRegistryResolver('quay.io'),
    }
