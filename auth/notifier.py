"""
auth/notifier.py -- Development delivery channel for password reset OTPs.

LogOTPNotifier writes the code to the application log. Swap in a real
OTPNotifier (email, SMS) for production; AuthService only sees the protocol.
"""

from __future__ import annotations

import logging

logger = logging.getLogger("restauth.auth.notifier")


class LogOTPNotifier:
    async def send_password_reset_otp(self, email: str, otp: str, expires_in: int) -> None:
        logger.info(
            "Password reset OTP for %s: %s (expires in %d minutes)",
            email,
            otp,
            max(1, expires_in // 60),
        )
