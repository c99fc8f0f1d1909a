import asyncio
import smtplib
from email.message import EmailMessage

from constants import EMAIL_SENDER, SMTP_HOST, SMTP_PASSWORD, SMTP_PORT, SMTP_USE_TLS, SMTP_USERNAME
from logging_config import get_logger

logger = get_logger(__name__)

ACTION_SUBJECT = "New Action Item Assigned"


def build_action_message(email: str, user_name: str, description: str, sender: str = None) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = ACTION_SUBJECT
    msg["To"] = email
    if sender:
        msg["From"] = sender
    msg.set_content(
        f"Hello {user_name},\n\n"
        f"You have been assigned a new action item:\n\n"
        f"{description}\n\n"
        f"Kind Regards,\nAgileFlow Team\n"
    )
    return msg


class EmailNotifier:
    """Sends action item notifications over SMTP.

    smtplib blocks, so sends run in the default executor. When no SMTP host
    is configured notifications are skipped with a warning.
    """

    def __init__(self, host=SMTP_HOST, port=SMTP_PORT, username=SMTP_USERNAME,
                 password=SMTP_PASSWORD, use_tls=SMTP_USE_TLS, sender=EMAIL_SENDER, timeout=20):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.host and self.sender)

    def _send(self, msg: EmailMessage):
        server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        try:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(msg)
        finally:
            server.quit()

    async def send_action_notification(self, email: str, user_name: str, description: str):
        if not self.enabled:
            logger.warning(f"SMTP not configured, skipping action notification to {email}")
            return
        msg = build_action_message(email, user_name, description, sender=self.sender)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._send, msg)
        logger.info(f"Action notification sent to {email}")
