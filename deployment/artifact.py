"""
Artifact reference resolution.

Build tooling hands over image references in whatever shape it produced
them: a bare string, a quoted string or a JSON array holding one entry.
Everything is normalised here before any remote step runs.
"""

import json
import re
from typing import Optional

from pydantic import BaseModel, ConfigDict

from core.exceptions import InvalidArtifactReference

NULL_SENTINELS = {"", "null", "none", "undefined", "[]", "[null]", '[""]'}

_DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_REPOSITORY_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$")


class ArtifactReference(BaseModel):
    """Parsed form of <registry>/<repository>[:tag][@sha256:digest]."""

    model_config = ConfigDict(frozen=True)

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.registry}/{self.repository}"

    def with_tag(self, tag: str) -> "ArtifactReference":
        return ArtifactReference(registry=self.registry, repository=self.repository, tag=tag)

    def with_digest(self, digest: str) -> "ArtifactReference":
        return ArtifactReference(registry=self.registry, repository=self.repository, digest=digest)

    def __str__(self) -> str:
        reference = self.name
        if self.tag:
            reference += f":{self.tag}"
        if self.digest:
            reference += f"@{self.digest}"
        return reference


def _unwrap(payload: str) -> str:
    text = payload.strip()
    if text.startswith("["):
        try:
            items = json.loads(text)
        except json.JSONDecodeError:
            # Shell-mangled arrays lose their inner quotes: [ghcr.io/acme/app:latest]
            if not text.endswith("]"):
                raise InvalidArtifactReference("Unterminated array payload", payload=payload)
            items = [part for part in text[1:-1].split(",") if part.strip()]
        if not isinstance(items, list):
            raise InvalidArtifactReference("Artifact payload is not a list", payload=payload)
        if len(items) != 1:
            raise InvalidArtifactReference(
                f"Artifact payload must hold exactly one reference, got {len(items)}", payload=payload
            )
        item = items[0]
        if item is None:
            raise InvalidArtifactReference("Artifact payload holds a null reference", payload=payload)
        text = str(item).strip()
    return text.strip().strip("'\"").strip()


def resolve_artifact_reference(payload: Optional[str]) -> str:
    """
    Turn a raw artifact payload into a canonical registry reference.

    Raises:
        InvalidArtifactReference: payload is empty, a null sentinel,
            resolves to an empty string or is not a registry reference
    """
    if payload is None:
        raise InvalidArtifactReference("Artifact payload is missing")
    if payload.strip().lower() in NULL_SENTINELS:
        raise InvalidArtifactReference("Artifact payload is empty", payload=payload)

    reference = _unwrap(payload)
    if reference.lower() in NULL_SENTINELS:
        raise InvalidArtifactReference("Artifact payload resolved to an empty reference", payload=payload)

    # Validates shape; raises on anything that is not a pullable reference
    return str(parse_artifact_reference(reference))


def parse_artifact_reference(reference: str) -> ArtifactReference:
    """Split a reference into registry, repository, tag and digest."""
    if not reference or any(ch.isspace() for ch in reference):
        raise InvalidArtifactReference("Artifact reference is empty or contains whitespace", payload=reference)

    remainder, digest = reference, None
    if "@" in remainder:
        remainder, digest = remainder.split("@", 1)
        if not _DIGEST_RE.match(digest):
            raise InvalidArtifactReference(f"Invalid digest '{digest}'", payload=reference)

    tag = None
    last_segment = remainder.rsplit("/", 1)[-1]
    if ":" in last_segment:
        remainder, tag = remainder.rsplit(":", 1)
        if not _TAG_RE.match(tag):
            raise InvalidArtifactReference(f"Invalid tag '{tag}'", payload=reference)

    if "/" not in remainder:
        raise InvalidArtifactReference("Artifact reference must include a registry host", payload=reference)
    registry, repository = remainder.split("/", 1)
    if not ("." in registry or ":" in registry or registry == "localhost"):
        raise InvalidArtifactReference(f"'{registry}' is not a registry host", payload=reference)
    if not _REPOSITORY_RE.match(repository):
        raise InvalidArtifactReference(f"Invalid repository '{repository}'", payload=reference)
    if tag is None and digest is None:
        raise InvalidArtifactReference("Artifact reference needs a tag or a digest", payload=reference)

    return ArtifactReference(registry=registry, repository=repository, tag=tag, digest=digest)
