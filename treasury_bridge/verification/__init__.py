"""
Inbound payment verification.

    - ``NativePaymentVerifier`` — native-coin transfer to the treasury address.
    - ``TokenPaymentVerifier`` — token transfer to the treasury's token account.
"""

from treasury_bridge.verification.native import NativePaymentVerifier
from treasury_bridge.verification.token import TokenPaymentVerifier

__all__ = [
    "NativePaymentVerifier",
    "TokenPaymentVerifier",
]
