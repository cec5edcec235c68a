"""
Outbound collaborators.
"""

from teamvault.services.mail import (
    ConfirmationMailer,
    LoggingMailer,
    MailDeliveryError,
    MailMessage,
    render_confirmation_mail,
)

__all__ = [
    "ConfirmationMailer",
    "LoggingMailer",
    "MailDeliveryError",
    "MailMessage",
    "render_confirmation_mail",
]
