from .role import Role  # noqa: F401
from .user import User  # noqa: F401
from .member import Chapter, Member  # noqa: F401
from .dues import DuesConfiguration, DuesPayment, MemberDues  # noqa: F401
from .payment_intent import PaymentIntent  # noqa: F401
from .installment import InstallmentEligibility, InstallmentPayment, InstallmentPlan  # noqa: F401
