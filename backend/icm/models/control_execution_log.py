# backend/icm/models/control_execution_log.py
"""
Audit records that could not be written to a tenant datastore.

A run that fails before a tenant connection exists (bad input, unknown tenant,
unreachable datastore) still owes an audit record, and so does a run whose
tenant-side write kept failing. Those land here, always keyed by tenant_id and
only ever read back with an explicit tenant filter.
"""
from icm.db.base import Base
from icm.db.tenant_tables import execution_log_table

CONTROL_EXECUTION_LOGS = execution_log_table("control_execution_logs", Base.metadata)
