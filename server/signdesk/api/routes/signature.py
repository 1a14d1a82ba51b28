from fastapi import APIRouter, Depends

from signdesk.api.dependencies.signature import get_rate_limit_gate
from signdesk.schemas.document import RateLimitStatusRead
from signdesk.services.rate_limit_gate import RateLimitGate


router = APIRouter(prefix="/signature", tags=["signature"])


@router.get("/rate-limit", response_model=RateLimitStatusRead)
async def rate_limit_status_endpoint(gate: RateLimitGate = Depends(get_rate_limit_gate)) -> RateLimitStatusRead:
    return RateLimitStatusRead.model_validate(gate.status())
