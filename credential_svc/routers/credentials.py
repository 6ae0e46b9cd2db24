from __future__ import annotations
from io import BytesIO
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
import qrcode

from ..deps import get_claims, get_credential_service, get_secret_store
from ..core.credentials import embedded_subject_id, encode, validate
from ..core.redis import SubjectSecretStore, allow_request, used_nonce_once
from ..schemas import Credential, GenerateResult, ProfileUpdate, SubjectProfile, ValidationResult, VerifyRequest
from ..services.credentials import CredentialService

router = APIRouter(prefix="/credentials", tags=["credentials"])

async def _subject_for(claims: dict, svc: CredentialService) -> SubjectProfile:
    uid = str(claims["sub"])
    known = await svc.last_known_subject(uid)
    if known:
        return known
    return SubjectProfile(subject_id=uid, name=claims.get("name"))

def _or_503(result: GenerateResult, response: Response) -> GenerateResult:
    if not result.success:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result

# --- 1) Profile changed in the app: mint a fresh credential from the new snapshot
@router.post("/me", response_model=GenerateResult, status_code=201)
async def regenerate_mine(
    payload: ProfileUpdate,
    response: Response,
    claims: dict = Depends(get_claims),
    svc: CredentialService = Depends(get_credential_service),
):
    subject = SubjectProfile(subject_id=str(claims["sub"]), **payload.model_dump())
    return _or_503(await svc.get_or_generate(subject, force=True), response)

@router.get("/me", response_model=GenerateResult)
async def current_or_new(
    response: Response,
    claims: dict = Depends(get_claims),
    svc: CredentialService = Depends(get_credential_service),
):
    subject = await _subject_for(claims, svc)
    return _or_503(await svc.get_or_generate(subject), response)

@router.get("/me/qr.png")
async def current_qr_png(claims: dict = Depends(get_claims), svc: CredentialService = Depends(get_credential_service)):
    result = await svc.get_or_generate(await _subject_for(claims, svc))
    if not result.success or result.credential is None:
        raise HTTPException(status_code=503, detail=result.error or "Credential unavailable")
    img = qrcode.make(encode(result.credential))
    b = BytesIO(); img.save(b, format="PNG")
    return Response(content=b.getvalue(), media_type="image/png")

@router.get("/me/history", response_model=list[Credential])
async def my_history(claims: dict = Depends(get_claims), svc: CredentialService = Depends(get_credential_service)):
    return await svc.history(str(claims["sub"]))

@router.delete("/me", status_code=204)
async def invalidate_mine(claims: dict = Depends(get_claims), svc: CredentialService = Depends(get_credential_service)):
    await svc.invalidate(str(claims["sub"]))
    return Response(status_code=204)

# --- 2) Staff scans a credential; optional event scope enables the replay guard
@router.post("/verify", response_model=ValidationResult)
async def verify(
    payload: VerifyRequest,
    request: Request,
    claims: dict = Depends(get_claims),
    svc: CredentialService = Depends(get_credential_service),
    secrets: SubjectSecretStore = Depends(get_secret_store),
):
    ip = request.client.host if request.client else "unknown"
    if not await allow_request(ip, "credentials.verify"):
        raise HTTPException(status_code=429, detail="Too many requests")

    sid = embedded_subject_id(payload.value)
    secret = await secrets.get(sid) if sid else None
    result = validate(payload.value, secret, svc.clock(), svc.ttl)

    if result.valid and payload.event_id and result.payload:
        ttl = int(svc.ttl.total_seconds())
        if not await used_nonce_once(payload.event_id, result.payload.nonce, ttl):
            return ValidationResult(
                valid=False, payload=result.payload, subject_id=result.subject_id,
                error="Credential already used for this event",
            )
    return result
