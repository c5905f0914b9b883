"""
Error taxonomy for the failover engine.

Probe-level failures are recorded as data (``ProbeErrorKind``) and never
raised out of the health monitor. The exceptions below are what callers of
the engine can actually observe.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

import httpx


class ProbeErrorKind(str, Enum):
    """Why a probe failed."""
    PROBE_TIMEOUT = "probe_timeout"
    CONNECTION_REFUSED = "connection_refused"
    PROTOCOL_ERROR = "protocol_error"


class FailoverError(Exception):
    """Base class for all engine errors."""


class ProbeTimeout(FailoverError):
    """A probe exceeded its wall-clock bound."""


class ServiceUnreachable(FailoverError):
    """A provider endpoint could not be reached."""

    def __init__(self, endpoint: str, detail: Optional[str] = None):
        self.endpoint = endpoint
        self.detail = detail
        message = f"Service at {endpoint} is unreachable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ConfigurationInvalid(FailoverError):
    """Provider or engine configuration cannot be used."""


class ModelNotFound(FailoverError):
    """No provider in the catalog offers the requested model."""

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Model {model} not found")


@dataclass(frozen=True)
class Rejection:
    """Why a candidate provider was not selected."""
    provider_id: str
    reason: str

    def __str__(self) -> str:
        return f"{self.provider_id}: {self.reason}"


class NoProviderAvailable(FailoverError):
    """Terminal selection failure; carries every candidate's rejection."""

    def __init__(self, reason: str, rejections: Sequence[Rejection] = ()):
        self.reason = reason
        self.rejections: List[Rejection] = list(rejections)
        details = "; ".join(str(r) for r in self.rejections)
        message = reason if not details else f"{reason}. Rejected: {details}"
        super().__init__(message)


def classify_exception(exc: BaseException) -> ProbeErrorKind:
    """
    Map an exception raised by a provider client to a probe error kind.

    Args:
        exc: Exception raised while probing

    Returns:
        Matching ProbeErrorKind
    """
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException, ProbeTimeout)):
        return ProbeErrorKind.PROBE_TIMEOUT
    if isinstance(exc, (httpx.ConnectError, ConnectionError, ServiceUnreachable)):
        return ProbeErrorKind.CONNECTION_REFUSED
    return ProbeErrorKind.PROTOCOL_ERROR
