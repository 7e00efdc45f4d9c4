"""Provider and service lookups, plus the per-provider claim serialiser."""

from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.provider import Provider, Service
from .base_repository import BaseRepository


class ProviderRepository(BaseRepository[Provider]):
    def __init__(self, db: Session):
        super().__init__(db, Provider)

    def claim_provider(self, provider_id: str) -> bool:
        """
        Bump the provider's slot_version as the first write of a claim transaction.

        On PostgreSQL the UPDATE takes the provider row lock; on SQLite it
        takes the database write lock. Either way concurrent claimers for the
        same provider queue here until the holder commits or rolls back.
        Returns False when the provider does not exist.
        """
        try:
            result = self.db.execute(
                update(Provider)
                .where(Provider.id == provider_id)
                .values(slot_version=Provider.slot_version + 1)
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)
        except SQLAlchemyError as e:
            self.logger.error("Error claiming provider %s: %s", provider_id, e)
            self.db.rollback()
            raise RepositoryException(f"Failed to claim provider: {str(e)}")

    def get_active(self, provider_id: str) -> Optional[Provider]:
        provider = self.get_by_id(provider_id)
        if provider is None or not provider.is_active:
            return None
        return provider


class ServiceRepository(BaseRepository[Service]):
    def __init__(self, db: Session):
        super().__init__(db, Service)

    def list_for_provider(self, provider_id: str, *, active_only: bool = True) -> List[Service]:
        query = self._build_query().filter(Service.provider_id == provider_id)
        if active_only:
            query = query.filter(Service.is_active.is_(True))
        return self._execute_query(query.order_by(Service.name.asc()))
