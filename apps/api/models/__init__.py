"""Models package."""

from .organization import Organization, OrganizationMember
from .credit_wallet import CreditWallet
from .credit_transaction import CreditTransaction
from .credit_allocation_rule import CreditAllocationRule
