"""AT Protocol handle and DID to PDS resolution.

Starting an authorization only needs the account DID and the PDS base URL. This module defines
the `PdsResolver` boundary the OAuth client depends on, and a minimal HTTP implementation that
uses the handle's well-known endpoint and the did:plc / did:web documents. DNS TXT handle
verification and DID document signature checks are left to a full identity resolver plugged in
through the same protocol.
"""

from enum import IntEnum
import logging
from typing import Any, Dict, Optional, Protocol

from aiohttp import ClientError, ClientSession
from pydantic import BaseModel
import sentry_sdk

logger = logging.getLogger(__name__)


class SubjectType(IntEnum):
    """AT Protocol subject type enumeration."""

    did_method_plc = 1
    did_method_web = 2
    hostname = 3


class ParsedSubject(BaseModel):
    subject_type: SubjectType
    subject: str


class ResolvedSubject(BaseModel):
    """Resolved AT Protocol subject: DID, handle and PDS endpoint."""

    did: str
    handle: Optional[str] = None
    pds: str


class PdsResolver(Protocol):
    async def resolve(self, subject: str) -> Optional[ResolvedSubject]:
        """Resolve a handle or DID, returning None when it cannot be resolved."""
        ...


def parse_input(subject: str) -> Optional[ParsedSubject]:
    """Parse and classify AT Protocol subject input.

    Normalizes input by removing `at://` and `@` prefixes.

    Returns:
        ParsedSubject with type and normalized string, or None for empty input
    """
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if len(subject) == 0:
        return None

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)
    elif subject.startswith("did:"):
        return None

    if "/" in subject or ":" in subject or "." not in subject:
        return None

    return ParsedSubject(subject_type=SubjectType.hostname, subject=subject.lower())


def handle_predicate(value: str) -> bool:
    return value is not None and value.startswith("at://")


def pds_predicate(value: Dict[str, Any]) -> bool:
    return (
        value is not None
        and value.get("type", None) == "AtprotoPersonalDataServer"
        and "serviceEndpoint" in value
    )


def subject_from_did_document(did: str, body: Any) -> Optional[ResolvedSubject]:
    """Extract the handle and PDS endpoint from a DID document."""
    if not isinstance(body, dict):
        return None

    handle = next(filter(handle_predicate, body.get("alsoKnownAs", [])), None)
    pds = next(filter(pds_predicate, body.get("service", [])), None)
    if pds is None:
        return None

    return ResolvedSubject(
        did=did,
        handle=handle.removeprefix("at://") if handle is not None else None,
        pds=pds.get("serviceEndpoint"),
    )


class HttpPdsResolver:
    """Resolve subjects over HTTPS only.

    Args:
        session: HTTP client session
        plc_hostname: PLC directory hostname for did:plc resolution
    """

    def __init__(self, session: ClientSession, plc_hostname: str = "plc.directory") -> None:
        self._session = session
        self._plc_hostname = plc_hostname

    async def resolve_handle(self, handle: str) -> Optional[str]:
        try:
            async with self._session.get(
                f"https://{handle}/.well-known/atproto-did"
            ) as resp:
                if resp.status != 200:
                    return None
                body = (await resp.text()).strip()
                if body.startswith("did:"):
                    return body
                return None
        except ClientError as e:
            sentry_sdk.capture_exception(e)
            logger.warning(f"Unable to resolve handle {handle}: {e!r}")
            return None

    async def resolve_did(self, did: str) -> Optional[ResolvedSubject]:
        if did.startswith("did:plc:"):
            url = f"https://{self._plc_hostname}/{did}"
        elif did.startswith("did:web:"):
            parts = did.removeprefix("did:web:").split(":")
            if len(parts) == 1:
                parts.append(".well-known")
            url = "https://{inner}/did.json".format(inner="/".join(parts))
        else:
            return None

        try:
            async with self._session.get(url) as resp:
                if resp.status != 200:
                    return None
                return subject_from_did_document(did, await resp.json())
        except ClientError as e:
            sentry_sdk.capture_exception(e)
            logger.warning(f"Unable to resolve DID {did}: {e!r}")
            return None

    async def resolve(self, subject: str) -> Optional[ResolvedSubject]:
        parsed_subject = parse_input(subject)
        if parsed_subject is None:
            return None

        did: Optional[str] = parsed_subject.subject
        if parsed_subject.subject_type == SubjectType.hostname:
            did = await self.resolve_handle(parsed_subject.subject)

        if did is None:
            return None

        resolved = await self.resolve_did(did)
        if (
            resolved is not None
            and parsed_subject.subject_type == SubjectType.hostname
            and resolved.handle is None
        ):
            resolved.handle = parsed_subject.subject
        return resolved
