from workspace_store.db.repositories.base import Repository
from workspace_store.db.repositories.workspace_runs import WorkspaceRunsRepository
from workspace_store.db.repositories.audit_bundles import AuditBundlesRepository
from workspace_store.db.repositories.connectors import ConnectorsRepository
from workspace_store.db.repositories.consent_records import ConsentRecordsRepository
from workspace_store.db.repositories.brand_twins import BrandTwinsRepository
from workspace_store.db.repositories.decision_cards import DecisionCardsRepository
from workspace_store.db.repositories.simulation_results import SimulationResultsRepository
from workspace_store.db.repositories.asset_fingerprints import AssetFingerprintsRepository
from workspace_store.db.repositories.workspaces import WorkspacesRepository, WorkspaceWithChildren

__all__ = [
    "Repository",
    "WorkspacesRepository",
    "WorkspaceWithChildren",
    "WorkspaceRunsRepository",
    "AuditBundlesRepository",
    "ConnectorsRepository",
    "ConsentRecordsRepository",
    "BrandTwinsRepository",
    "DecisionCardsRepository",
    "SimulationResultsRepository",
    "AssetFingerprintsRepository",
]
