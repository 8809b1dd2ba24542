from billing_engine.models.billing import (  # noqa: F401
    AdjustmentKind,
    AdjustmentMode,
    Attempt,
    AttemptChannel,
    AttemptStatus,
    BillingAdjustment,
    BillingCycle,
    Charge,
    ChargeStatus,
    FxRate,
    Mandate,
    MandateStatus,
    PaymentMethod,
    PaymentMethodStatus,
    PaymentMethodType,
    PlanKey,
    Subscription,
    SubscriptionStatus,
)
from billing_engine.models.collections import (  # noqa: F401
    FallbackIntent,
    FallbackIntentStatus,
    FileBatch,
    FileBatchDirection,
    FileBatchItem,
    FileBatchItemStatus,
    FileBatchStatus,
)
from billing_engine.models.event_store import BillingEvent  # noqa: F401
from billing_engine.models.fiscal import (  # noqa: F401
    FiscalDocument,
    FiscalDocumentStatus,
    FiscalDocumentType,
)
from billing_engine.models.jobs import (  # noqa: F401
    BillingJobLock,
    BillingJobRun,
    BillingJobStatus,
)
