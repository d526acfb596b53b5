from typing import Annotated, Optional

from fastapi import Header, HTTPException, Request

from assistant_relay.application.runtime import RelayRuntime
from assistant_relay.infrastructure.security.token_validator import extract_bearer


def get_runtime(request: Request) -> RelayRuntime:
    return request.app.state.runtime


async def require_api_token(
    request: Request,
    authorization: Annotated[Optional[str], Header()] = None
) -> None:
    """Reject requests that do not carry the configured bearer token"""

    validator = request.app.state.token_validator
    if not validator.verify(extract_bearer(authorization)):
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing API token",
            headers={"WWW-Authenticate": "Bearer"}
        )
