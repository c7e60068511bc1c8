"""Logging setup and verbose tracing of backend commands.

With ``--verbose`` every command the backend runs is written as a pair of
JSON lines: one on the ``ciliumctl.request`` logger before it starts and
one on ``ciliumctl.response`` once it returns. Both carry the identity the
command acts on, so interleaved output of concurrent controllers can be
told apart.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional

if TYPE_CHECKING:
    from ciliumctl.shared.models import FeatureIdentity

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
# Only the end of stderr is kept; helm and cilium repeat themselves a lot.
STDERR_TAIL = 2000

_logger = logging.getLogger("ciliumctl")
_request_logger = logging.getLogger("ciliumctl.request")
_response_logger = logging.getLogger("ciliumctl.response")
_verbose = False


def configure_root(level: int = logging.INFO) -> None:
    """Install a basic handler unless the embedding program already has one."""

    if not logging.getLogger().handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)


def is_enabled() -> bool:
    return _verbose


def enable() -> None:
    """Turn on debug logging for the whole ``ciliumctl`` hierarchy."""

    global _verbose
    _verbose = True
    _logger.setLevel(logging.DEBUG)
    _logger.debug("Verbose tracing of backend commands enabled")


def disable() -> None:
    global _verbose
    _verbose = False
    _logger.setLevel(logging.INFO)


def _line(operation: str, identity: Optional["FeatureIdentity"], payload: Dict[str, Any]) -> str:
    record: Dict[str, Any] = {"operation": operation}
    if identity is not None:
        record["identity"] = identity.to_dict()
    record.update(payload)
    return json.dumps(record, separators=(",", ":"), sort_keys=True, default=str)


def log_request(
    operation: str, payload: Dict[str, Any], identity: Optional["FeatureIdentity"] = None
) -> None:
    """Trace an outgoing backend command."""

    if _verbose:
        _request_logger.debug("%s", _line(operation, identity, payload))


def log_response(
    operation: str,
    payload: Dict[str, Any],
    duration: Optional[float] = None,
    identity: Optional["FeatureIdentity"] = None,
) -> None:
    """Trace a finished backend command, with its wall time when known."""

    if not _verbose:
        return
    if duration is not None:
        payload = {**payload, "duration_seconds": round(duration, 4)}
    _response_logger.debug("%s", _line(operation, identity, payload))


@contextmanager
def trace_command(
    operation: str, cmd: List[str], identity: Optional["FeatureIdentity"] = None
) -> Iterator[Dict[str, Any]]:
    """Bracket one command with its request and response lines.

    The caller fills the yielded dict with response fields. A command that
    raises, including on cancellation, is traced with the exception name.
    """

    log_request(operation, {"command": " ".join(cmd)}, identity)
    response: Dict[str, Any] = {}
    started = time.perf_counter()
    try:
        yield response
    except BaseException as exc:
        response["error"] = type(exc).__name__
        raise
    finally:
        log_response(operation, response, time.perf_counter() - started, identity)
