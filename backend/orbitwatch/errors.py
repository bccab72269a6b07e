"""Exception hierarchy shared by the engine, the API and the CLI.

Every error carries a stable ``kind`` string (what API clients and logs key on)
and the HTTP status the API layer answers with.
"""
from __future__ import annotations


class OrbitWatchError(Exception):
    kind = "internal_error"
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# --- Input errors: reported to the caller, never retried ---


class MalformedTLE(OrbitWatchError):
    kind = "malformed_tle"
    http_status = 422

    def __init__(self, message: str, line: str | None = None) -> None:
        super().__init__(message)
        self.line = line


class UnknownObject(OrbitWatchError):
    kind = "unknown_object"
    http_status = 404

    def __init__(self, norad_id: int) -> None:
        super().__init__(f"No current TLE for catalog id {norad_id}")
        self.norad_id = norad_id


class UnknownAlert(OrbitWatchError):
    kind = "unknown_alert"
    http_status = 404

    def __init__(self, alert_id: str) -> None:
        super().__init__(f"Alert {alert_id} not found")
        self.alert_id = alert_id


class UnknownEndpoint(OrbitWatchError):
    kind = "unknown_endpoint"
    http_status = 404

    def __init__(self, endpoint_id: str) -> None:
        super().__init__(f"Webhook endpoint {endpoint_id} not found")
        self.endpoint_id = endpoint_id


class InvalidTransition(OrbitWatchError):
    kind = "invalid_transition"
    http_status = 409

    def __init__(self, status: str, event: str, detail: str | None = None) -> None:
        message = f"Cannot apply '{event}' to an alert in status '{status}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.status = status
        self.event = event


class InvalidRequest(OrbitWatchError):
    kind = "invalid_request"
    http_status = 422


# --- Numerical errors: the object is dropped from the current scan ---


class PropagationError(OrbitWatchError):
    kind = "propagation_error"
    http_status = 422

    def __init__(self, message: str, norad_id: int | None = None) -> None:
        super().__init__(message)
        self.norad_id = norad_id


class Decayed(PropagationError):
    kind = "decayed"


class NumericalDivergence(PropagationError):
    kind = "numerical_divergence"


# --- Transient external errors: retried per policy, then surfaced ---


class TLESourceError(OrbitWatchError):
    kind = "tle_source_unavailable"
    http_status = 502

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DispatchError(OrbitWatchError):
    kind = "dispatch_failed"
    http_status = 502

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# --- Programmer / invariant errors: abort the operation, keep serving ---


class ScreeningInvariantError(OrbitWatchError):
    kind = "internal_error"
    http_status = 500
