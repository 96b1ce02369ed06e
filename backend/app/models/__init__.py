from app.models.organisation import Organisation, User  # noqa: F401
from app.models.project import Project, Source  # noqa: F401
from app.models.processing_run import ProcessingRun, ProcessingStage  # noqa: F401
from app.models.audit import AuditEvent  # noqa: F401
