"""
Version tags minted along the promotion chain.

    latest -> vX.Y.Z-rc.N -> vX.Y.Z-rc.N-qa-success|failure -> vX.Y.Z
"""

import re
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from core.exceptions import InvalidVersionTag

LATEST = "latest"

_TAG_RE = re.compile(
    r"^v(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-rc\.(?P<rc>[1-9]\d*))?"
    r"(?:-qa-(?P<signoff>success|failure))?$"
)


class VersionTag(BaseModel):
    """A parsed vX.Y.Z[-rc.N[-qa-success|failure]] tag."""

    model_config = ConfigDict(frozen=True)

    major: int
    minor: int
    patch: int
    rc: Optional[int] = None
    signoff: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "VersionTag":
        match = _TAG_RE.match((value or "").strip())
        if not match:
            raise InvalidVersionTag(f"'{value}' is not a version tag", tag=value)
        if match.group("signoff") and not match.group("rc"):
            raise InvalidVersionTag("Sign-off suffix requires a prerelease tag", tag=value)
        return cls(
            major=int(match.group("major")),
            minor=int(match.group("minor")),
            patch=int(match.group("patch")),
            rc=int(match.group("rc")) if match.group("rc") else None,
            signoff=match.group("signoff"),
        )

    @classmethod
    def try_parse(cls, value: str) -> Optional["VersionTag"]:
        try:
            return cls.parse(value)
        except InvalidVersionTag:
            return None

    @property
    def base(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    @property
    def is_release(self) -> bool:
        return self.rc is None

    @property
    def is_candidate(self) -> bool:
        """A bare prerelease tag, as minted by acceptance."""
        return self.rc is not None and self.signoff is None

    @property
    def sort_key(self) -> Tuple[int, int, int, int, int]:
        # Releases sort above every prerelease of the same base
        return (*self.base, self.rc if self.rc is not None else 1 << 30, 1 if self.signoff else 0)

    def candidate(self) -> "VersionTag":
        """The -rc.N tag this tag was derived from."""
        if self.rc is None:
            raise InvalidVersionTag(f"{self} is not a prerelease tag", tag=str(self))
        return VersionTag(major=self.major, minor=self.minor, patch=self.patch, rc=self.rc)

    def with_signoff(self, passed: bool) -> "VersionTag":
        if not self.is_candidate:
            raise InvalidVersionTag(f"Only -rc.N tags can be signed off, got {self}", tag=str(self))
        return self.model_copy(update={"signoff": "success" if passed else "failure"})

    def to_release(self) -> "VersionTag":
        """Strip prerelease and sign-off suffixes."""
        return VersionTag(major=self.major, minor=self.minor, patch=self.patch)

    def __str__(self) -> str:
        tag = f"v{self.major}.{self.minor}.{self.patch}"
        if self.rc is not None:
            tag += f"-rc.{self.rc}"
        if self.signoff:
            tag += f"-qa-{self.signoff}"
        return tag


def parse_tags(tags: Iterable[str]) -> List[VersionTag]:
    """Parse the version tags out of a registry tag list, ignoring everything else."""
    parsed = [VersionTag.try_parse(tag) for tag in tags]
    return sorted((tag for tag in parsed if tag is not None), key=lambda tag: tag.sort_key)


def parse_base(version: str) -> Tuple[int, int, int]:
    match = re.fullmatch(r"v?(\d+)\.(\d+)\.(\d+)", version.strip())
    if not match:
        raise InvalidVersionTag(f"'{version}' is not an X.Y.Z version", tag=version)
    return (int(match.group(1)), int(match.group(2)), int(match.group(3)))


def next_release_base(tags: Iterable[str], configured: str) -> Tuple[int, int, int]:
    """
    The X.Y.Z the next candidate is built for.

    The configured version is used until it has been released; after that
    the patch number moves past the highest release so releases only grow.
    """
    wanted = parse_base(configured)
    releases = [tag.base for tag in parse_tags(tags) if tag.is_release]
    if not releases:
        return wanted
    highest = max(releases)
    if wanted > highest:
        return wanted
    return (highest[0], highest[1], highest[2] + 1)


def next_candidate(tags: Iterable[str], base: Tuple[int, int, int]) -> VersionTag:
    """The next -rc.N tag for base: one past the highest existing candidate."""
    numbers = [tag.rc for tag in parse_tags(tags) if tag.base == base and tag.rc is not None]
    return VersionTag(major=base[0], minor=base[1], patch=base[2], rc=max(numbers, default=0) + 1)


def latest_candidate(tags: Iterable[str]) -> Optional[VersionTag]:
    candidates = [tag for tag in parse_tags(tags) if tag.is_candidate]
    return candidates[-1] if candidates else None
