"""Small HTTP helpers used by health and reachability checks."""

from __future__ import annotations

from typing import Any, Optional

import httpx


def get_json(url: str, *, timeout: float = 5.0, transport: Optional[httpx.BaseTransport] = None) -> Any:
    """GET ``url`` and decode the JSON body; raises on transport or HTTP errors."""
    with httpx.Client(timeout=timeout, transport=transport, follow_redirects=True) as client:
        response = client.get(url)
        response.raise_for_status()
        return response.json()


def is_reachable(url: str, *, timeout: float = 5.0, transport: Optional[httpx.BaseTransport] = None) -> bool:
    """True when ``url`` answers with a non-error HTTP status."""
    try:
        with httpx.Client(timeout=timeout, transport=transport, follow_redirects=True) as client:
            response = client.get(url)
    except httpx.HTTPError:
        return False
    return response.status_code < 400
