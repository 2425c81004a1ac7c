from fastapi import APIRouter, Depends

from ..auth import Principal, get_principal
from ..schemas import PrincipalResponse

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.get("/me", response_model=PrincipalResponse)
async def get_me(principal: Principal = Depends(get_principal)):
    """The identity the request resolved to"""
    return PrincipalResponse(kind=principal.kind, userId=principal.user_id, email=principal.email)
