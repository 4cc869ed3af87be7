import random
from dataclasses import dataclass

from .config import RuntimeConfig
from .errors import MisconfiguredWeights
from .models import ModelDescriptor


@dataclass(frozen=True)
class ResolvedEndpoint:
    url: str
    authorization: str | None = None

    def headers(self) -> dict[str, str]:
        if not self.authorization:
            return {}
        return {"Authorization": self.authorization}


def _authorization(runtime: RuntimeConfig) -> str | None:
    token = runtime.access_token.strip()
    return f"Bearer {token}" if token else None


def select_endpoint(
    model: ModelDescriptor,
    runtime: RuntimeConfig,
    rng: random.Random | None = None,
) -> ResolvedEndpoint:
    """Pick one of the model's endpoints with probability proportional to weight."""
    authorization = _authorization(runtime)
    endpoints = model.endpoints or []
    if not endpoints:
        return ResolvedEndpoint(url=runtime.default_endpoint.url, authorization=authorization)

    total_weight = sum(e.weight for e in endpoints)
    if total_weight <= 0:
        raise MisconfiguredWeights(
            f"Model '{model.id}' has endpoints with a total weight of {total_weight}"
        )

    draw = (rng or random).random() * total_weight
    cumulative = 0
    for endpoint in endpoints:
        cumulative += endpoint.weight
        if cumulative > draw:
            return ResolvedEndpoint(url=endpoint.url, authorization=authorization)

    return ResolvedEndpoint(url=runtime.default_endpoint.url, authorization=authorization)
