"""Token pricing API endpoints.

- GET /api/tokens/packages - Purchasable token packages and the signup bonus
- GET /api/tokens/cost - Token cost of a generation request
"""

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from genledger.api.dependencies import get_settings, to_http_exception
from genledger.core.config import Settings
from genledger.services.exceptions import GenLedgerError
from genledger.services.pricing import TOKEN_PACKAGES, compute_cost

router = APIRouter(prefix="/api/tokens", tags=["tokens"])


class TokenPackageDTO(BaseModel):
    """Purchasable token package."""

    id: str
    name: str
    tokens: int = Field(..., description="Tokens credited on purchase")
    price: int = Field(..., description="Price in KRW")
    price_per_token: float
    popular: bool = False
    discount: int = Field(default=0, description="Discount versus the basic package, percent")


class SignupBonusDTO(BaseModel):
    signup_bonus: int
    description: str


class PackagesResponse(BaseModel):
    packages: list[TokenPackageDTO]
    free_tokens: SignupBonusDTO


class CostResponse(BaseModel):
    """Token cost of one generation request."""

    model: str
    aspect_ratio: str
    output_count: int
    cost: int = Field(..., description="Tokens debited when the job is accepted")


@router.get("/packages", response_model=PackagesResponse, status_code=status.HTTP_200_OK)
async def get_packages(settings: Settings = Depends(get_settings)) -> PackagesResponse:
    """List token packages and the signup bonus."""
    return PackagesResponse(
        packages=[
            TokenPackageDTO(
                id=package.id,
                name=package.name,
                tokens=package.tokens,
                price=package.price,
                price_per_token=package.price_per_token,
                popular=package.popular,
                discount=package.discount,
            )
            for package in TOKEN_PACKAGES.values()
        ],
        free_tokens=SignupBonusDTO(
            signup_bonus=settings.signup_bonus_tokens,
            description="Granted once when an account is initialized",
        ),
    )


@router.get("/cost", response_model=CostResponse, status_code=status.HTTP_200_OK)
async def get_cost(
    model: str = Query(..., description="Model name (nanobanana, nanobanana-upscale, seedream, topaz-upscale)"),
    aspect_ratio: str = Query(default="auto"),
    output_count: int = Query(default=1),
    settings: Settings = Depends(get_settings),
) -> CostResponse:
    """Compute the token cost of a request without submitting it.

    Raises:
        HTTPException 400: Unknown model, unsupported aspect ratio or output count
    """
    try:
        cost = compute_cost(model, aspect_ratio, output_count, settings.max_outputs_per_request)
    except GenLedgerError as e:
        raise to_http_exception(e)
    return CostResponse(model=model, aspect_ratio=aspect_ratio, output_count=output_count, cost=cost)
