"""Late-bound dependencies shared between ``backend.main`` and the routers.

``main`` owns the database settings and the session cookie decoding. Routers
and repositories read them from here so that nothing under ``backend.app``
has to import ``main``.
"""
from __future__ import annotations

from typing import Any, Callable, Dict

ConnectionFactory = Callable[[], Any]
PayerResolver = Callable[..., Any]

_registry: Dict[str, Callable[..., Any]] = {}


def configure(*, get_conn: ConnectionFactory, get_current_user: PayerResolver) -> None:
    _registry["get_conn"] = get_conn
    _registry["get_current_user"] = get_current_user


def _lookup(name: str) -> Callable[..., Any]:
    try:
        return _registry[name]
    except KeyError:
        raise RuntimeError(f"Application context has not been configured yet: {name}") from None


def get_conn() -> Any:
    return _lookup("get_conn")()


def get_current_user(*args: Any, **kwargs: Any) -> Any:
    """Resolve the authenticated payer (anything exposing ``id``) for the request."""
    return _lookup("get_current_user")(*args, **kwargs)
