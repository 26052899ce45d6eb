"""Extension version handling and publish-version negotiation.

Versions are dot-separated numeric tuples. The textual component count is
kept for display and for the manifest (``1.2`` stays ``1.2``) while
equality and ordering use a canonical three-component key, so ``1.2`` and
``1.2.0`` name the same version.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple, Union

from extforge.core.logging_manager import get_logger
from extforge.utils.exceptions import ManifestParseError, NegotiationError, RegistryError

logger = get_logger(__name__)

VERSION_REGEX = re.compile(r'^[0-9]+(\.[0-9]+)*$')
CANONICAL_LENGTH = 3


@dataclass(frozen=True, eq=False)
class Version:
    """An extension version.

    Attributes:
        parts: Numeric components as written (leading zeros dropped)
    """

    parts: Tuple[int, ...]

    @classmethod
    def parse(cls, value: Union[str, 'Version']) -> 'Version':
        """Parse a version string such as ``1.2.3`` or ``"1.2"``.

        Raises:
            ManifestParseError: If the value is not a dot-separated numeric tuple
        """
        if isinstance(value, Version):
            return value
        text = str(value).strip().strip('"').strip("'")
        if not VERSION_REGEX.match(text):
            raise ManifestParseError(f"Invalid version: {value!r}", field='version')
        parts = tuple(int(p) for p in text.split('.'))
        if len(parts) > CANONICAL_LENGTH:
            raise ManifestParseError(
                f"Invalid version: {value!r} (at most {CANONICAL_LENGTH} components)",
                field='version',
            )
        return cls(parts)

    @property
    def key(self) -> Tuple[int, ...]:
        """Canonical comparison key, right-padded with zeros."""
        return self.parts + (0,) * (CANONICAL_LENGTH - len(self.parts))

    @property
    def canonical(self) -> str:
        return '.'.join(str(p) for p in self.key)

    def __str__(self) -> str:
        return '.'.join(str(p) for p in self.parts)

    def __repr__(self) -> str:
        return f"Version('{self}')"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, str):
            try:
                other = Version.parse(other)
            except ManifestParseError:
                return False
        if not isinstance(other, Version):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __lt__(self, other: 'Version') -> bool:
        return self.key < Version.parse(other).key

    def __le__(self, other: 'Version') -> bool:
        return self.key <= Version.parse(other).key

    def __gt__(self, other: 'Version') -> bool:
        return self.key > Version.parse(other).key

    def __ge__(self, other: 'Version') -> bool:
        return self.key >= Version.parse(other).key


def increment(version: Union[str, Version]) -> Version:
    """Bump the least-significant component by one.

    There is no carry into higher components: ``1.2.9`` becomes ``1.2.10``.
    """
    v = Version.parse(version)
    return Version(v.parts[:-1] + (v.parts[-1] + 1,))


@dataclass(frozen=True)
class NegotiationResult:
    """Outcome of version negotiation.

    Attributes:
        version: Version to publish
        manifest_rewritten: Whether the manifest must be rewritten to ``version``
        reason: ``forced``, ``remote_conflict`` or ``unchanged``
    """

    version: Version
    manifest_rewritten: bool
    reason: str = 'unchanged'


def negotiate(
        current: Union[str, Version],
        force_increment: bool = False,
        remote_versions: Optional[Iterable[Union[str, Version]]] = None,
) -> NegotiationResult:
    """Decide which version to publish.

    Args:
        current: Version currently in the manifest
        force_increment: Always bump the version
        remote_versions: Versions already present in the registry, if known

    Returns:
        The version to publish and whether the manifest has to be rewritten
    """
    current = Version.parse(current)
    if force_increment:
        return NegotiationResult(increment(current), True, 'forced')

    if remote_versions is not None:
        known = set()
        for remote in remote_versions:
            try:
                known.add(Version.parse(remote))
            except ManifestParseError:
                logger.warning("Ignoring unparseable remote version", version=str(remote))
        if current in known:
            return NegotiationResult(increment(current), True, 'remote_conflict')

    return NegotiationResult(current, False, 'unchanged')


def list_remote_versions(client: Any, name: str) -> List[str]:
    """List the registry's versions for ``name``.

    Raises:
        NegotiationError: If the registry cannot provide the list
    """
    try:
        return [remote.version for remote in client.list_versions(name)]
    except RegistryError as e:
        raise NegotiationError(
            f"Could not list versions of {name}: {e.message}",
            status_code=e.status_code,
            data=e.data,
            name=name,
        ) from e


def fetch_remote_versions(client: Any, name: str) -> Optional[List[str]]:
    """Versions known to the registry, or None when they cannot be known.

    Negotiation fails open: a :class:`NegotiationError` is logged and the
    build continues with local-only negotiation.

    Args:
        client: A registry client, or None when no registry is configured
        name: Extension name
    """
    if client is None:
        return None
    try:
        return list_remote_versions(client, name)
    except NegotiationError as e:
        logger.warning(
            "Remote version list unavailable, negotiating locally",
            name=name,
            error=e.message,
        )
        return None
