"""ORM model registry - import all models so Alembic autogenerate can detect them."""

from policyguard.models.document_upload import DocumentUpload
from policyguard.models.generated_artifact import GeneratedArtifactRecord
from policyguard.models.institution import Institution
from policyguard.models.processing_result import (
    GapAnalysisRecord,
    PolicyRedlineRecord,
    ProcessingResult,
)

__all__ = [
    "Institution",
    "DocumentUpload",
    "ProcessingResult",
    "GapAnalysisRecord",
    "PolicyRedlineRecord",
    "GeneratedArtifactRecord",
]
