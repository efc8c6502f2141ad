"""
Outgoing mail. Resend when an API key is configured, the log otherwise.
"""

import logging

import resend

logger = logging.getLogger(__name__)


class MailDeliveryError(Exception):
    pass


class LogMailer:
    """Stand-in transport for environments without mail credentials."""

    def send(self, to_email: str, subject: str, body_html: str) -> None:
        logger.warning("No mail transport configured. To %s, %r:\n%s", to_email, subject, body_html)


class ResendMailer:
    def __init__(self, api_key: str, sender: str):
        self.api_key = api_key
        self.sender = sender

    def send(self, to_email: str, subject: str, body_html: str) -> None:
        payload = {
            "from": self.sender,
            "to": [to_email],
            "subject": subject,
            "html": body_html,
        }
        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            raise MailDeliveryError(str(exc)) from exc
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            raise MailDeliveryError(f"Unexpected response from Resend: {response!r}")


def build_mailer(api_key: str, sender: str):
    if api_key:
        return ResendMailer(api_key, sender)
    return LogMailer()
