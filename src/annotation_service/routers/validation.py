"""Shared request validation helpers for the routers."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from annotation_service.core.exceptions import AuthenticationError, ServiceError, ValidationError
from annotation_service.core.state import get_app_state

if TYPE_CHECKING:
    from fastapi import Request

    from annotation_service.clients.session_verifier import ActorSession
    from annotation_service.services.annotation_manager import AnnotationManager


def parse_json_body(raw_body: bytes) -> dict[str, Any]:
    """Parse JSON body, raising ServiceError on failure."""
    try:
        data = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ServiceError(
            "INVALID_JSON",
            "Request body is not valid JSON",
            400,
            {},
        ) from exc

    if not isinstance(data, dict):
        raise ServiceError(
            "INVALID_JSON",
            "Request body must be a JSON object",
            400,
            {},
        )

    return data


def require_string(data: dict[str, Any], field_name: str) -> str:
    """Extract a required non-empty string field."""
    value = data.get(field_name)
    if value is None:
        raise ValidationError(f"Missing required field: {field_name}")
    if not isinstance(value, str):
        raise ValidationError(f"Field '{field_name}' must be a string")
    if not value.strip():
        raise ValidationError(f"Field '{field_name}' must not be empty")
    return value.strip()


def optional_string(data: dict[str, Any], field_name: str) -> str | None:
    """Extract an optional string field."""
    value = data.get(field_name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Field '{field_name}' must be a string")
    return value


def optional_bool(data: dict[str, Any], field_name: str) -> bool:
    """Extract an optional boolean flag, defaulting to False."""
    value = data.get(field_name)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValidationError(f"Field '{field_name}' must be a boolean")
    return value


def require_object(data: dict[str, Any], field_name: str) -> dict[str, Any]:
    """Extract a required JSON object field."""
    value = data.get(field_name)
    if value is None:
        raise ValidationError(f"Missing required field: {field_name}")
    if not isinstance(value, dict):
        raise ValidationError(f"Field '{field_name}' must be an object")
    return value


def extract_bearer_token(authorization: str | None) -> str:
    """Extract the session token from the Authorization header."""
    if authorization is None:
        raise AuthenticationError("Missing Authorization header")
    if not authorization.startswith("Bearer "):
        raise AuthenticationError("Authorization header must use Bearer scheme")
    token = authorization[len("Bearer ") :].strip()
    if not token:
        raise AuthenticationError("Bearer token must not be empty")
    return token


def get_actor(request: Request) -> ActorSession:
    """Verify the request's session token and return the actor."""
    token = extract_bearer_token(request.headers.get("authorization"))
    state = get_app_state()
    if state.session_verifier is None:
        msg = "SessionVerifier not initialized"
        raise RuntimeError(msg)
    return state.session_verifier.verify(token)


def get_manager() -> AnnotationManager:
    """Return the initialized AnnotationManager."""
    state = get_app_state()
    if state.annotation_manager is None:
        msg = "AnnotationManager not initialized"
        raise RuntimeError(msg)
    return state.annotation_manager
