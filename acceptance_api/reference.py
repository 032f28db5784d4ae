"""
Read-only access to provider and plan reference data.

The import pipeline owns these tables; the ledger only asks whether a
provider/plan exists and what a provider's specialty text is.
"""

from typing import Optional, Tuple

from sqlalchemy.orm import Session

from acceptance_api.database import Provider, InsurancePlan


class ReferenceData:
    """Reference lookups backed by the shared database."""

    def __init__(self, db: Session):
        self.db = db

    def provider_exists(self, provider_id: str) -> bool:
        return self.db.get(Provider, provider_id) is not None

    def plan_exists(self, plan_id: str) -> bool:
        return self.db.get(InsurancePlan, plan_id) is not None

    def get_specialty(self, provider_id: str) -> Tuple[Optional[str], Optional[str]]:
        """Return (primary specialty, taxonomy description) for a provider."""
        provider = self.db.get(Provider, provider_id)
        if provider is None:
            return None, None
        return provider.primary_specialty, provider.taxonomy_description
