"""Model registry, per-request token cost and purchasable token packages."""

from dataclasses import dataclass

from genledger.services.exceptions import InvalidModel, InvalidRequest

ASPECT_RATIOS = ("auto", "1:1", "4:3", "3:4", "16:9", "9:16")
DEFAULT_MAX_OUTPUTS = 4

# Non-auto aspect ratio on nanobanana costs extra per output
ASPECT_RATIO_SURCHARGE = 2


@dataclass(frozen=True)
class ModelSpec:
    """Static description of a generation model.

    Attributes:
        name: Public model name used in requests
        provider: Provider that runs the model (kie, fal)
        provider_model: Model identifier on the provider side
        base_cost: Tokens charged per output before surcharges
        requires_prompt: Request must carry a non-empty prompt
        aspect_ratio_surcharge: Non-auto aspect ratios cost extra per output
    """

    name: str
    provider: str
    provider_model: str
    base_cost: int
    requires_prompt: bool = False
    aspect_ratio_surcharge: bool = False


MODELS: dict[str, ModelSpec] = {
    spec.name: spec
    for spec in (
        ModelSpec(
            name="nanobanana",
            provider="kie",
            provider_model="google/nano-banana-edit",
            base_cost=2,
            requires_prompt=True,
            aspect_ratio_surcharge=True,
        ),
        ModelSpec(
            name="nanobanana-upscale",
            provider="kie",
            provider_model="nano-banana-upscale",
            base_cost=1,
        ),
        ModelSpec(
            name="seedream",
            provider="kie",
            provider_model="bytedance/seedream-v4-edit",
            base_cost=4,
            requires_prompt=True,
        ),
        ModelSpec(
            name="topaz-upscale",
            provider="fal",
            provider_model="topaz/upscale/image",
            base_cost=5,
        ),
    )
}


@dataclass(frozen=True)
class TokenPackage:
    id: str
    name: str
    tokens: int
    price: int
    popular: bool = False
    discount: int = 0

    @property
    def price_per_token(self) -> float:
        return round(self.price / self.tokens, 1)


TOKEN_PACKAGES: dict[str, TokenPackage] = {
    package.id: package
    for package in (
        TokenPackage(id="basic", name="Basic", tokens=100, price=1000),
        TokenPackage(id="popular", name="Popular", tokens=550, price=5000, popular=True, discount=9),
        TokenPackage(id="recommended", name="Recommended", tokens=1200, price=10000, discount=17),
        TokenPackage(id="premium", name="Premium", tokens=3000, price=20000, discount=33),
    )
}


def get_model(model: str) -> ModelSpec:
    """Look up a model in the registry.

    Raises:
        InvalidModel: If the model is unknown
    """
    spec = MODELS.get(model)
    if spec is None:
        raise InvalidModel(model)
    return spec


def compute_cost(
    model: str,
    aspect_ratio: str = "auto",
    output_count: int = 1,
    max_outputs: int = DEFAULT_MAX_OUTPUTS,
) -> int:
    """Compute the token cost of a generation request.

    cost = (base_cost + surcharge) * output_count, where surcharge applies only
    to models priced per aspect ratio when the ratio is not "auto".

    Args:
        model: Public model name
        aspect_ratio: One of ASPECT_RATIOS
        output_count: Number of images requested (1..max_outputs)
        max_outputs: Upper bound on output_count

    Returns:
        Positive token cost

    Raises:
        InvalidModel: If the model is unknown
        InvalidRequest: If aspect_ratio or output_count is out of range
    """
    spec = get_model(model)

    if aspect_ratio not in ASPECT_RATIOS:
        raise InvalidRequest(
            f"Unsupported aspect ratio {aspect_ratio!r}, expected one of {', '.join(ASPECT_RATIOS)}"
        )
    if isinstance(output_count, bool) or not isinstance(output_count, int):
        raise InvalidRequest("output_count must be an integer")
    if output_count < 1 or output_count > max_outputs:
        raise InvalidRequest(f"output_count must be between 1 and {max_outputs}")

    surcharge = ASPECT_RATIO_SURCHARGE if spec.aspect_ratio_surcharge and aspect_ratio != "auto" else 0
    return (spec.base_cost + surcharge) * output_count
