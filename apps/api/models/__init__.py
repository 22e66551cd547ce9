"""Models package."""

from .account import Account
from .credit_balance import CreditBalance
from .credit_ledger import CreditLedger
