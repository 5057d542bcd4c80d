"""
User roles enumeration.

Defines the participant types for the consultation system.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        PATIENT: Holds a subscription and consumes consultation units
        PROVIDER: Consults patients and is paid into a wallet
        ADMIN: Operator access
    """
    PATIENT = "PATIENT"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"
