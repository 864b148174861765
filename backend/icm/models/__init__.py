# Import models here so Alembic can discover metadata.
from icm.models.tenant import Tenant  # noqa: F401
from icm.models.control_execution_log import CONTROL_EXECUTION_LOGS  # noqa: F401
