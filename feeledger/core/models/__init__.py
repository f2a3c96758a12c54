from feeledger.core.models.user import User
from feeledger.core.models.student import Student
from feeledger.core.models.account import Account
from feeledger.core.models.fee_item import FeeItem
from feeledger.core.models.payment import Payment, PaymentFeeItem
from feeledger.core.models.gateway_detail import PaymentGatewayDetail
from feeledger.core.models.transaction import Transaction
from feeledger.core.models.audit_log import FinancialAuditLog

__all__ = [
    "User",
    "Student",
    "Account",
    "FeeItem",
    "Payment",
    "PaymentFeeItem",
    "PaymentGatewayDetail",
    "Transaction",
    "FinancialAuditLog",
]
