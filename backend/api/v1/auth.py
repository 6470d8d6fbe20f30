from fastapi import APIRouter, Depends
from api.dependencies import get_bearer_token, get_current_user
from schemas.otp_schema import ForgotPasswordRequest, OtpResendRequest, OtpVerifyRequest, ResetPasswordRequest
from schemas.user_schema import CurrentUser, LoginRequest, SignupRequest
from services import session_service, user_service
from utils.responses import no_store_json
from utils.timing import timeit

router = APIRouter()


@router.post("/signup")
@timeit("signup")
async def signup(payload: SignupRequest):
    return no_store_json(await user_service.create_user(payload), status_code=201)


@router.post("/verify-otp")
@timeit("verify_signup_otp")
async def verify_otp(payload: OtpVerifyRequest):
    return no_store_json(await session_service.verify_signup(payload.email, payload.otp))


@router.post("/login")
@timeit("login")
async def login(payload: LoginRequest):
    return no_store_json(await session_service.authenticate_with_password(payload.email, payload.password))


@router.post("/verify-login-otp")
@timeit("verify_login_otp")
async def verify_login_otp(payload: OtpVerifyRequest):
    return no_store_json(await session_service.complete_login(payload.email, payload.otp))


@router.post("/resend-otp")
async def resend_otp(payload: OtpResendRequest):
    return no_store_json(await session_service.resend_otp(payload.email, payload.purpose))


@router.post("/refresh")
async def refresh_token(token: str = Depends(get_bearer_token)):
    return no_store_json(await session_service.refresh(token))


@router.post("/logout")
async def logout(current_user: CurrentUser = Depends(get_current_user)):
    # Tokens are stateless; the client discards its copy
    return no_store_json({"message": "Logged out successfully"})


@router.post("/forgot-password")
async def forgot_password(payload: ForgotPasswordRequest):
    return no_store_json(await user_service.request_password_reset(payload.email))


@router.post("/reset-password")
async def reset_password(payload: ResetPasswordRequest):
    return no_store_json(
        await user_service.reset_password_with_otp(payload.email, payload.otp, payload.new_password)
    )


@router.get("/me")
async def read_current_user(current_user: CurrentUser = Depends(get_current_user)):
    return no_store_json(await user_service.get_profile(current_user.id))
