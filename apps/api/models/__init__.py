"""Models package."""

from .user import User
from .credit_ledger import CreditLedger
from .license_order import LicenseOrder
from .license_account import LicenseAccount
from .extension_request import ExtensionRequest
from .topup_request import TopUpRequest
from .plan_setting import PlanSetting
from .system_setting import SystemSetting
