"""Construction of generation providers from settings."""

from forge3d.core.config import Settings
from forge3d.services.generation.base import GenerationProvider
from forge3d.services.generation.hunyuan_client import Hunyuan3DProvider
from forge3d.services.generation.replicate_client import ReplicateTrellisProvider


def replicate_webhook_url(settings: Settings) -> str | None:
    """Public callback URL for Replicate, or None when webhooks are disabled."""
    if not settings.public_base_url:
        return None
    return f"{settings.public_base_url.rstrip('/')}/webhooks/replicate"


def build_providers(settings: Settings) -> dict[str, GenerationProvider]:
    """Build every provider that has enough configuration to talk to its API.

    Records submitted to a provider are always reconciled against that same
    provider, even after GENERATION_PROVIDER changes.
    """
    providers: dict[str, GenerationProvider] = {
        Hunyuan3DProvider.name: Hunyuan3DProvider(
            base_url=settings.hunyuan3d_api_url,
            api_key=settings.hunyuan3d_api_key or None,
        )
    }
    if settings.replicate_api_token:
        providers[ReplicateTrellisProvider.name] = ReplicateTrellisProvider(
            api_token=settings.replicate_api_token,
            model_version=settings.replicate_model_version,
            webhook_url=replicate_webhook_url(settings),
        )
    return providers


def build_provider(settings: Settings, providers: dict[str, GenerationProvider] | None = None) -> GenerationProvider:
    """Return the provider selected by GENERATION_PROVIDER.

    Raises:
        ValueError: If the selected provider is unknown or not configured
    """
    providers = providers if providers is not None else build_providers(settings)
    try:
        return providers[settings.generation_provider]
    except KeyError as e:
        raise ValueError(
            f"Generation provider '{settings.generation_provider}' is not configured"
        ) from e
