"""Validation of remote builder endpoint addresses."""

from __future__ import annotations

from urllib.parse import urlsplit

SCHEMES = frozenset({"tcp", "unix", "ssh", "docker-container", "kube-pod"})


def validate_endpoint(endpoint: str) -> None:
    """Raise ValueError unless the endpoint is a URL with a supported scheme."""
    try:
        scheme = urlsplit(endpoint).scheme
    except ValueError as exc:
        raise ValueError(f"failed to parse endpoint {endpoint}: {exc}") from exc
    if scheme not in SCHEMES:
        raise ValueError(f"unrecognized url scheme {scheme}")


def is_valid_endpoint(endpoint: str) -> bool:
    try:
        validate_endpoint(endpoint)
    except ValueError:
        return False
    return True