"""
api/routes/user.py -- Signed-in user endpoints.

Routes:
  POST /api/user/onboarding  -- store optional profile fields, mark onboarding
                                complete, re-issue the session cookie

Re-issuing matters: the gate reads onboarding_completed from the token, so
without a fresh token the caller would keep bouncing to /onboarding until the
next scheduled refresh.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from api.models import MessageResponse, OnboardingRequest
from auth.dependencies import get_flows, get_token_builder, require_session
from auth.flows import CredentialFlows
from auth.session import SessionTokenBuilder
from auth.tokens import set_session_cookie

router = APIRouter(prefix="/api/user")


@router.post("/onboarding", response_model=MessageResponse)
def complete_onboarding(
    body: OnboardingRequest,
    claims: dict = Depends(require_session),
    flows: CredentialFlows = Depends(get_flows),
    builder: SessionTokenBuilder = Depends(get_token_builder),
) -> JSONResponse:
    flows.complete_onboarding(claims["user_id"], body.bio, body.occupation, body.company)
    token, _ = builder.reissue(claims)
    resp = JSONResponse(content=MessageResponse(message="Onboarding completed successfully").model_dump())
    set_session_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
