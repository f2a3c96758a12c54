from enum import Enum


class FeeItemStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    partial = "partial"
    paid = "paid"
    waived = "waived"


class PaymentStatus(str, Enum):
    initiated = "initiated"
    pending = "pending"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.completed, PaymentStatus.failed, PaymentStatus.cancelled}
)


class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    GCASH = "gcash"
    PAYPAL = "paypal"
    STRIPE = "stripe"


class GatewayName(str, Enum):
    GCASH = "gcash"
    PAYPAL = "paypal"
    STRIPE = "stripe"


class AllocationStrategy(str, Enum):
    EXPLICIT = "explicit"
    OLDEST_FIRST = "oldest_first"


class TransactionKind(str, Enum):
    CHARGE = "charge"
    PAYMENT = "payment"
    WAIVER = "waiver"
    ADJUSTMENT = "adjustment"


class StudentStatus(str, Enum):
    enrolled = "enrolled"
    graduated = "graduated"
    inactive = "inactive"


class FeeUpdateType(str, Enum):
    SET_AMOUNT = "set_amount"
    ADJUST_PERCENTAGE = "adjust_percentage"
    ADD_AMOUNT = "add_amount"


# Ordered ladder used by promotion; finishing the last level graduates the student.
YEAR_LEVELS = ("1st Year", "2nd Year", "3rd Year", "4th Year")

STAFF_ROLES = ("SUPER_ADMIN", "ADMIN", "ACCOUNTING")
