"""Import every model so ``Base.metadata`` knows all tables (alembic, tests)."""

from academy.db.base_class import Base  # noqa: F401
from academy.models.course import Course  # noqa: F401
from academy.models.customer import CustomerProfile  # noqa: F401
from academy.models.dispute import Dispute  # noqa: F401
from academy.models.enrollment import Enrollment  # noqa: F401
from academy.models.gift import GiftPurchase  # noqa: F401
from academy.models.installment_plan import InstallmentPlan  # noqa: F401
from academy.models.payment import Payment  # noqa: F401
from academy.models.promo_code import PromoCode  # noqa: F401
from academy.models.refund import Refund  # noqa: F401
from academy.models.scheduled_notification import ScheduledNotification  # noqa: F401
from academy.models.subscription import Subscription  # noqa: F401
from academy.models.webhook_event import WebhookEventRecord  # noqa: F401
