from typing import List, Optional, Protocol, runtime_checkable

from coreason_free_fleet.models import FreeModel, ModelMetadata, ProviderModel, ScrapedPolicy


@runtime_checkable
class ProviderAdapter(Protocol):
    """
    Protocol for a provider's model catalog (one adapter per provider id).
    """

    provider_id: str
    provider_name: str

    async def fetch_models(self) -> List[ProviderModel]:
        """
        Fetches the provider's catalog.
        Raises a transport error (httpx.HTTPError) on network failure or non-2xx responses.
        """
        ...

    def is_free_model(self, model: ProviderModel) -> bool:
        """
        Applies the provider's own free-tier rule to a catalog entry.
        """
        ...

    def normalize_model(self, model: ProviderModel) -> FreeModel:
        """
        Converts a catalog entry into the shared FreeModel record.
        """
        ...


@runtime_checkable
class MetadataAdapter(Protocol):
    """
    Protocol for an independent model-metadata source consulted by the Oracle.
    """

    provider_id: str
    provider_name: str

    async def fetch_model_metadata(self, model_id: str) -> Optional[ModelMetadata]:
        """
        Returns metadata for one model, or None when the source has no record of it.
        """
        ...

    async def fetch_models_metadata(self, model_ids: Optional[List[str]] = None) -> List[ModelMetadata]:
        """
        Batch variant; with no ids returns everything the source knows.
        """
        ...

    def is_available(self) -> bool:
        """
        Whether the source can currently be queried.
        """
        ...


@runtime_checkable
class PolicyScraper(Protocol):
    """
    Protocol for deriving a provider's free-tier policy from public sources.
    Implementations must not raise; on failure they return a static fallback policy.
    """

    provider_id: str
    policy_url: str

    async def scrape(self) -> ScrapedPolicy: ...
