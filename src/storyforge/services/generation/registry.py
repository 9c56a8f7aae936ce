"""Adapter registry: builds the adapter for each ProviderModel member.

Adding a provider means adding enum members and one branch here; the
fallback chain and consumer only see the ProviderAdapter contract.
"""

import httpx

from storyforge.core.config import Settings
from storyforge.models.job import Capability
from storyforge.services.generation.base import ProviderAdapter, ProviderFamily, ProviderModel
from storyforge.services.generation.gemini_adapter import GeminiImageAdapter
from storyforge.services.generation.replicate_adapter import ReplicateImageAdapter
from storyforge.services.generation.veo_adapter import VeoVideoAdapter


def resolve_models(model_ids: list[str], capability: Capability) -> list[ProviderModel]:
    """Validate a configured chain and map ids to ProviderModel members.

    Raises:
        ValueError: Unknown model id, wrong capability, duplicates, or empty chain
    """
    if not model_ids:
        raise ValueError(f"No models configured for {capability.value} generation")

    models = []
    for model_id in model_ids:
        try:
            model = ProviderModel(model_id)
        except ValueError:
            known = ", ".join(m.value for m in ProviderModel)
            raise ValueError(f"Unknown model {model_id!r}. Known models: {known}") from None
        if model.capability != capability:
            raise ValueError(
                f"Model {model_id} generates {model.capability.value}, "
                f"cannot be used in the {capability.value} chain"
            )
        if model in models:
            raise ValueError(f"Model {model_id} appears twice in the {capability.value} chain")
        models.append(model)
    return models


def build_adapter(
    model: ProviderModel, settings: Settings, client: httpx.AsyncClient
) -> ProviderAdapter:
    """Create the adapter for one model."""
    if model.family is ProviderFamily.GEMINI:
        return GeminiImageAdapter(
            model=model.value,
            client=client,
            api_key=settings.google_api_key,
            api_base=settings.google_api_base,
            prompt_template=settings.image_prompt_template,
        )
    if model.family is ProviderFamily.VEO:
        return VeoVideoAdapter(
            model=model.value,
            client=client,
            api_key=settings.google_api_key,
            api_base=settings.google_api_base,
            poll_interval=settings.veo_poll_interval_seconds,
        )
    return ReplicateImageAdapter(
        model=model.value, client=client, api_token=settings.replicate_api_token
    )
