"""
Freshness decision for a single container.

compare() is a pure decision procedure: given what is known so far it either
decides a verdict or says which registry lookup it needs next.
FreshnessChecker drives it for one container at a time, doing the lookups
through the resolvers owned by the current RunContext.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional

import requests

from image_ref import DEFAULT_TAG, ImageReference, parse_image_reference
from registries import (
    ArchitectureMismatch,
    ImageInfo,
    PlatformDigest,
    RegistryError,
    RegistryResolver,
    RunCache,
    UnsupportedRegistryResolver,
    build_resolvers,
)

logger = logging.getLogger(__name__)


class Verdict(str, Enum):
    YES = 'yes'
    NO = 'no'
    UNKNOWN = 'unknown'


class Stage(Enum):
    NEED_LATEST = 'need_latest'
    NEED_CURRENT = 'need_current'
    DECIDED = 'decided'


@dataclass(frozen=True)
class Decision:
    stage: Stage
    verdict: Optional[Verdict] = None
    reason: str = ''


@dataclass(frozen=True)
class ContainerObservation:
    """What the container runtime told us about one container."""
    container_name: str
    image: str
    recorded_digest: str
    os: str
    architecture: str
    variant: str = ''


@dataclass
class CheckResult:
    container_name: str
    image: str
    verdict: Verdict

    def to_dict(self) -> Dict[str, str]:
        return {
            'container': self.container_name,
            'image': self.image,
            'is_latest': self.verdict.value,
        }


def _decided(verdict: Verdict, reason: str) -> Decision:
    return Decision(Stage.DECIDED, verdict, reason)


def select_platform_digest(platform_digests: List[PlatformDigest], os: str,
                           architecture: str, variant: str = '') -> Optional[str]:
    """
    Pick the digest built for the given platform.

    Entries must match os and architecture exactly.  When several do (e.g.
    linux/arm v6 and v7) the one with the same variant wins; without a
    variant match the last candidate is used.
    """
    candidates = [
        p for p in platform_digests
        if p.os == os and p.architecture == architecture and p.digest
    ]
    if not candidates:
        return None
    if variant:
        for p in candidates:
            if p.variant == variant:
                return p.digest
    return candidates[-1].digest


def _compare_docker_hub(observation: ContainerObservation, reference: ImageReference,
                        latest_info: Optional[ImageInfo],
                        current_info: Optional[ImageInfo]) -> Decision:
    if latest_info is None:
        return Decision(Stage.NEED_LATEST)

    if latest_info.digest and observation.recorded_digest == latest_info.digest:
        return _decided(Verdict.YES, "digest matches latest")

    if reference.tag == DEFAULT_TAG:
        return _decided(Verdict.NO, "latest tag moved to a newer digest")

    if current_info is None:
        return Decision(Stage.NEED_CURRENT)

    platform = f"{observation.os}/{observation.architecture}"
    current_digest = select_platform_digest(
        current_info.platform_digests, observation.os, observation.architecture, observation.variant
    )
    if current_digest is None:
        raise ArchitectureMismatch(f"No {platform} image for {reference.image}")

    latest_digest = select_platform_digest(
        latest_info.platform_digests, observation.os, observation.architecture, observation.variant
    )
    if latest_digest is None:
        raise ArchitectureMismatch(f"No {platform} image for {reference.path}:{DEFAULT_TAG}")

    if current_digest == latest_digest:
        return _decided(Verdict.YES, f"{reference.tag} and latest share the {platform} digest")
    return _decided(Verdict.NO, f"{reference.tag} and latest differ for {platform}")


def _compare_ghcr(current_info: Optional[ImageInfo]) -> Decision:
    if current_info is None:
        return Decision(Stage.NEED_CURRENT)
    if DEFAULT_TAG in current_info.tags:
        return _decided(Verdict.YES, "recorded digest is tagged latest")
    return _decided(Verdict.NO, "recorded digest is not tagged latest")


def compare(observation: ContainerObservation, reference: ImageReference,
            latest_info: Optional[ImageInfo] = None,
            current_info: Optional[ImageInfo] = None) -> Decision:
    """
    Decide how far along the freshness check for one container is.

    Args:
        observation: Container facts from the runtime
        reference: Parsed image reference of the container
        latest_info: Resolved info for the 'latest' tag, if fetched yet
        current_info: Resolved info for the container's own tag, if fetched yet

    Returns:
        Decision; stage DECIDED carries the verdict, the other stages name
        the lookup still required

    Raises:
        ArchitectureMismatch when no platform entry fits the container
    """
    if reference.registry == 'ghcr.io':
        return _compare_ghcr(current_info)
    return _compare_docker_hub(observation, reference, latest_info, current_info)


@dataclass
class RunContext:
    """State for one run: cache, resolvers, collected results."""
    session: requests.Session
    cache: RunCache = field(default_factory=RunCache)
    ghcr_token: Optional[str] = None
    results: List[CheckResult] = field(default_factory=list)
    resolvers: Dict[str, RegistryResolver] = field(default_factory=dict)

    def __post_init__(self):
        if not self.resolvers:
            self.resolvers = build_resolvers(self.session, self.cache, self.ghcr_token)

    def resolver_for(self, reference: ImageReference) -> RegistryResolver:
        resolver = self.resolvers.get(reference.registry)
        if resolver is None:
            resolver = UnsupportedRegistryResolver(reference.registry)
        return resolver

    def record(self, result: CheckResult) -> CheckResult:
        self.results.append(result)
        return result


class FreshnessChecker:
    """Runs the decision procedure for containers within one RunContext."""

    def __init__(self, context: RunContext):
        self.context = context

    def _decide(self, observation: ContainerObservation, reference: ImageReference) -> Decision:
        resolver = self.context.resolver_for(reference)
        latest_info = None
        current_info = None

        decision = compare(observation, reference)
        while decision.stage is not Stage.DECIDED:
            if decision.stage is Stage.NEED_LATEST:
                latest_info = resolver.resolve(replace(reference, tag=DEFAULT_TAG))
            else:
                current_info = resolver.resolve(reference, observation.recorded_digest or None)
            decision = compare(observation, reference, latest_info, current_info)
        return decision

    def check(self, observation: ContainerObservation) -> CheckResult:
        """Check one container and record the result in the run context."""
        reference = parse_image_reference(observation.image)

        if not observation.recorded_digest:
            logger.warning(
                "%s: image %s has no registry digest (built locally?)",
                observation.container_name, reference.image,
            )
            verdict = Verdict.UNKNOWN
        else:
            try:
                decision = self._decide(observation, reference)
                verdict = decision.verdict
                logger.debug("%s: %s", observation.container_name, decision.reason)
            except RegistryError as e:
                logger.warning(
                    "Unable to check %s (%s): %s", observation.container_name, reference.image, e
                )
                verdict = Verdict.UNKNOWN

        result = CheckResult(observation.container_name, reference.image, verdict)
        logger.info("%10s %s %s", f"[{verdict.value}]", result.container_name, result.image)
        return self.context.record(result)
