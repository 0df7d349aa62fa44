import enum


MANUAL_SCHEDULE = "manual"


# ============================================================================
# ENUMS
# ============================================================================

class TriggerPolicy(str, enum.Enum):
    """When a run's rows are forwarded to destinations"""
    ALWAYS = "always"
    ON_CHANGE = "onChange"


class RecurrenceType(str, enum.Enum):
    """Friendly recurrence settings that resolve into a schedule descriptor"""
    ONCE = "once"
    DAILY = "daily"
    EVERY_N_DAYS = "every-n-days"
    CUSTOM = "custom"


class RunStatus(str, enum.Enum):
    """Job run status"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ConnectionStatus(str, enum.Enum):
    """Per-connection status within a run"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"  # completed by an earlier run, resumed from checkpoint


class CheckpointOutcome(str, enum.Enum):
    """Outcome recorded in a checkpoint for one connection"""
    COMPLETED = "completed"
    FAILED = "failed"


class WriteStrategy(str, enum.Enum):
    """How a destination receives rows during a run"""
    PROGRESSIVE = "progressive"
    STREAMED = "streamed"
    BATCH_AT_END = "batch_at_end"


class AdapterCapability(str, enum.Enum):
    """Write methods a destination adapter implements"""
    SEND = "send"
    SEND_MULTI_CONNECTION = "send_multi_connection"
    SEND_PROGRESSIVE = "send_progressive"


class ProgressEventType(str, enum.Enum):
    """Progress event types consumed by the presentation layer"""
    JOB_STARTED = "job:started"
    JOB_PROGRESS = "job:progress"
    CONNECTION_STARTED = "job:connection:started"
    CONNECTION_PROGRESS = "job:connection:progress"
    CONNECTION_COMPLETED = "job:connection:completed"
    CONNECTION_FAILED = "job:connection:failed"
    JOB_COMPLETED = "job:completed"
    JOB_FAILED = "job:failed"
