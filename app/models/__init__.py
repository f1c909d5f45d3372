from app.models.account import (  # noqa: F401
    Account,
    AccountRole,
    AccountStatus,
    InstitutionType,
    PaymentStatus,
)
from app.models.billing import (  # noqa: F401
    BillingCycle,
    BillingRun,
    BillingRunStatus,
    Invoice,
    InvoiceStatus,
    InvoiceType,
)
from app.models.failed_job import FailedJob, FailedJobStatus  # noqa: F401
from app.models.notification import (  # noqa: F401
    Notification,
    NotificationChannel,
    NotificationSeverity,
    NotificationStatus,
)
from app.models.sequence import NumberSequence  # noqa: F401
