import hmac
from dataclasses import dataclass
from typing import Annotated, Literal

from fastapi import Depends, Header, HTTPException, Request

from core.exceptions import AuthorizationError

Role = Literal["customer", "driver"]


@dataclass(frozen=True)
class Caller:
    """Identity asserted by the upstream auth layer for this request."""

    user_id: str
    role: Role


def api_key_matches(supplied: str | None, expected: str) -> bool:
    if not supplied or not expected:
        return False
    return hmac.compare_digest(supplied.encode(), expected.encode())


def verify_api_key(request: Request, x_api_key: str = Header(...)) -> str:
    """Validates API key from X-API-Key header."""
    expected = request.app.state.settings.api.key
    if not expected:
        raise HTTPException(status_code=500, detail="API_KEY not configured")

    if not api_key_matches(x_api_key, expected):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def get_caller(
    x_user_id: Annotated[str, Header(min_length=1)],
    x_user_role: Annotated[Role, Header()],
) -> Caller:
    return Caller(user_id=x_user_id, role=x_user_role)


def require_customer(caller: Annotated[Caller, Depends(get_caller)]) -> Caller:
    if caller.role != "customer":
        raise AuthorizationError("Customer role required", details={"role": caller.role})
    return caller


def require_driver(caller: Annotated[Caller, Depends(get_caller)]) -> Caller:
    if caller.role != "driver":
        raise AuthorizationError("Driver role required", details={"role": caller.role})
    return caller


CallerDep = Annotated[Caller, Depends(get_caller)]
CustomerDep = Annotated[Caller, Depends(require_customer)]
DriverDep = Annotated[Caller, Depends(require_driver)]
