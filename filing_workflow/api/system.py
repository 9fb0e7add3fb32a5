"""
Filing system wiring and the FastAPI dependency that hands it to routers
"""

from datetime import datetime
from typing import Callable, Optional

from ..audit import AuditTrail
from ..clients import ClientManager
from ..config import FilingConfig, get_config
from ..engine import WorkflowEngine
from ..registry_client import CompaniesHouseClient, MockRegistryClient, RegistryClient
from ..storage import StorageInterface, create_storage
from ..store import WorkflowStore


class FilingSystem:
    """Filing workflow engine with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 registry: Optional[RegistryClient] = None,
                 config: Optional[FilingConfig] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config or get_config()

        self.storage = storage or create_storage(self.config.database_url)
        self.registry = registry or self._create_registry_client()

        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.store = WorkflowStore(self.storage)
        self.client_manager = ClientManager(self.store, self.audit_trail)
        self.engine = WorkflowEngine(
            self.store, self.registry, self.audit_trail, clock=clock,
            accounts_due_months=self.config.accounts_due_months,
            corporation_tax_due_months=self.config.corporation_tax_due_months,
        )

    def _create_registry_client(self) -> RegistryClient:
        """Create the registry client based on configuration"""
        if self.config.use_mock_registry:
            return MockRegistryClient()
        return CompaniesHouseClient(
            base_url=self.config.registry_base_url,
            api_key=self.config.registry_api_key or None,
            timeout=self.config.registry_timeout,
            enabled=self.config.registry_enabled,
        )

    def close(self) -> None:
        self.registry.close()
        self.storage.close()


_filing_system: Optional[FilingSystem] = None


def get_filing_system() -> FilingSystem:
    """Dependency returning the process-wide filing system"""
    global _filing_system
    if _filing_system is None:
        _filing_system = FilingSystem()
    return _filing_system
