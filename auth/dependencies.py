"""
auth/dependencies.py -- FastAPI Depends() helpers that build per-request auth objects.

A fresh SessionResolver is built for every request so the in-process memo
never leaks between callers. It is shared by the AuthController and
UserManager of that request, so a single resolution serves both.

Token sources, checked in priority order:
  1. Cookie named after the token name -- set by POST /login and /byway.
  2. Authorization: <token_name> <value> header -- API clients.

The shared store, cache, and settings come from app.state, populated by the
lifespan in api/main.py.

Layer rule: no imports from core/ beyond what app.state carries.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.controller import AuthController
from auth.manage import UserManager
from auth.resolver import SessionResolver


def extract_token(request: Request, token_name: str) -> str | None:
    """Return the bearer token carried by the request, or None."""
    # 1. Cookie (browser clients)
    token = request.cookies.get(token_name)
    if token:
        return token

    # 2. Authorization: <token_name> <value>
    parts = request.headers.get("Authorization", "").split(" ")
    if len(parts) == 2 and parts[0] == token_name and parts[1]:
        return parts[1]
    return None


def get_resolver(request: Request) -> SessionResolver:
    """Build the request's resolver and feed it the presented token."""
    state = request.app.state
    resolver = SessionResolver(
        state.store,
        cache=state.cache,
        token_name=state.settings.token_name,
        expiration=state.settings.token_expire_seconds,
    )
    resolver.set_token_value(extract_token(request, resolver.get_token_name()))
    return resolver


def get_controller(resolver: SessionResolver = Depends(get_resolver)) -> AuthController:
    return AuthController(resolver)


def get_manager(request: Request, resolver: SessionResolver = Depends(get_resolver)) -> UserManager:
    """UserManager using the policy installed on app.state (DefaultPolicy if none)."""
    return UserManager(resolver, policy=getattr(request.app.state, "policy", None))
