"""
User roles enumeration.

Defines the role types carried in the identity context.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Operator staff; reviews remittances, settlements and invoices
        HUB_MANAGER: Runs a hub; receives, assigns, transfers and settles riders
        RIDER: Picks up and delivers parcels
        MERCHANT: Books parcels and is paid out through invoices
    """
    ADMIN = "ADMIN"
    HUB_MANAGER = "HUB_MANAGER"
    RIDER = "RIDER"
    MERCHANT = "MERCHANT"
