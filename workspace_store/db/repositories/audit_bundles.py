from workspace_store.db.models import AuditBundle
from workspace_store.db.repositories.base import Repository
from workspace_store.db.validation import validate_audit_bundle


class AuditBundlesRepository(Repository[AuditBundle]):
    """Signed audit bundles; rows are write-once."""

    model = AuditBundle
    validator = staticmethod(validate_audit_bundle)
    immutable = True
