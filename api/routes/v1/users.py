"""
api/routes/v1/users.py -- The caller's own profile.

Routes (authenticated under the route policy):
  GET /api/v1/users/me  -- current profile
  PUT /api/v1/users/me  -- update profile fields; password change needs current_password

The account is looked up by the session's username on every request, so a
profile change is visible immediately even though the token is stateless.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import ProfileResponse, ProfileUpdate
from auth.dependencies import get_identity
from auth.models import Identity
from auth.service import AuthService

router = APIRouter()


@router.get("/users/me", response_model=ProfileResponse)
def get_me(request: Request, identity: Identity = Depends(get_identity)) -> ProfileResponse:
    service: AuthService = request.app.state.auth_service
    account = service.accounts.find_by_username(identity.username)
    if account is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    return ProfileResponse.from_account(account)


@router.put("/users/me", response_model=ProfileResponse)
def update_me(
    request: Request,
    body: ProfileUpdate,
    identity: Identity = Depends(get_identity),
) -> ProfileResponse:
    service: AuthService = request.app.state.auth_service
    account = service.update_profile(
        identity.username,
        email=body.email,
        full_name=body.full_name,
        avatar_url=body.avatar_url,
        gender=body.gender,
        phone_number=body.phone_number,
        current_password=body.current_password,
        new_password=body.new_password,
    )
    return ProfileResponse.from_account(account)
