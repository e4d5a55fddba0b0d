"""Models package."""

from .user import User
from .credit_source import UserCredit
from .credit_reservation import CreditReservation
from .credit_ledger import CreditLedger
from .product import Product
from .front_view_approval import FrontViewApproval
from .generated_asset import GeneratedAsset
from .product_revision import ProductRevision
