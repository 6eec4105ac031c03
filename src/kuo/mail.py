"""Kubeconfig delivery over SMTP.

Mail is optional. Without an SMTP configuration, or for users that declare
no e-mail address, delivery is skipped with a warning.

Example:
    >>> from kuo.mail import Mailer, deliver_kubeconfig
    >>> mailer = Mailer(config.smtp, cluster_name=config.cluster_name)
    >>> await mailer.verify()
    >>> sent = await deliver_kubeconfig(mailer, user, kubeconfig_text)
"""

from __future__ import annotations

import html
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate
from typing import TYPE_CHECKING

import aiosmtplib
import structlog

from kuo.errors import EmailDeliveryError

if TYPE_CHECKING:
    from kuo.config import SMTPConfig
    from kuo.models.managed_user import ManagedUser

logger = structlog.get_logger(__name__)

SUBJECT = "You've been added to the Kubernetes cluster!"
ATTACHMENT_NAME = "kubeconfig.yaml"


class Mailer:
    """SMTP transport for kubeconfig e-mails.

    Attributes:
        config: SMTP settings.
        cluster_name: Optional cluster display name mentioned in the greeting.
    """

    def __init__(self, config: SMTPConfig, *, cluster_name: str | None = None) -> None:
        self.config = config
        self.cluster_name = cluster_name
        self._log = logger.bind(component="mailer", smtp_host=config.hostname)

    async def verify(self) -> None:
        """Open and authenticate a connection to check the settings.

        Raises:
            EmailDeliveryError: If the server is unreachable or rejects the
                credentials.
        """
        smtp = aiosmtplib.SMTP(
            hostname=self.config.hostname,
            port=self.config.port,
            use_tls=self.config.use_tls,
            timeout=self.config.timeout_seconds,
        )
        try:
            await smtp.connect()
            if self.config.user:
                await smtp.login(self.config.user, self.config.password.get_secret_value())
            await smtp.noop()
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError) as e:
            raise EmailDeliveryError(self.config.hostname, str(e)) from e
        self._log.info("smtp_connection_verified", port=self.config.port)

    async def send_kubeconfig(self, user: ManagedUser, kubeconfig: str) -> None:
        """Send a kubeconfig to a user.

        Args:
            user: Recipient. Must declare an e-mail address.
            kubeconfig: Kubeconfig YAML attached to the message.

        Raises:
            EmailDeliveryError: If the message cannot be delivered.
        """
        recipient = user.spec.email
        if not recipient:
            raise EmailDeliveryError(user.name or "", "user has no e-mail address")

        message = self.build_message(user, kubeconfig)
        try:
            await aiosmtplib.send(
                message,
                hostname=self.config.hostname,
                port=self.config.port,
                username=self.config.user or None,
                password=self.config.password.get_secret_value() or None,
                use_tls=self.config.use_tls,
                timeout=self.config.timeout_seconds,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            raise EmailDeliveryError(recipient, str(e)) from e
        self._log.info("kubeconfig_sent", user=user.name, recipient=recipient)

    def build_message(self, user: ManagedUser, kubeconfig: str) -> MIMEMultipart:
        """Build the multipart message: HTML greeting plus kubeconfig attachment."""
        msg = MIMEMultipart("mixed")
        msg["Subject"] = SUBJECT
        msg["From"] = formataddr((self.config.from_name, self.config.from_email))
        msg["To"] = formataddr((user.spec.full_name or "", user.spec.email or ""))
        msg["Date"] = formatdate(localtime=False)

        msg.attach(MIMEText(self._build_html(user), "html"))

        attachment = MIMEText(kubeconfig, "plain")
        attachment.add_header("Content-Disposition", "attachment", filename=ATTACHMENT_NAME)
        msg.attach(attachment)
        return msg

    def _build_html(self, user: ManagedUser) -> str:
        cluster = "the Kubernetes cluster"
        if self.cluster_name:
            cluster = f"the Kubernetes cluster <b>{html.escape(self.cluster_name)}</b>"
        return f"Hello, <b>{html.escape(user.name)}</b>! You've been added to {cluster}. Please download the kubeconfig."


async def deliver_kubeconfig(mailer: Mailer | None, user: ManagedUser, kubeconfig: str) -> bool:
    """Mail a kubeconfig if both a transport and an address are available.

    Args:
        mailer: Configured transport, None when SMTP is not configured.
        user: Recipient.
        kubeconfig: Kubeconfig YAML.

    Returns:
        True if a message was sent, False if delivery was skipped.

    Raises:
        EmailDeliveryError: If sending was attempted and failed.
    """
    if mailer is None:
        logger.warning("kubeconfig_mail_skipped", user=user.name, reason="SMTP not configured")
        return False
    if not user.spec.email:
        logger.warning("kubeconfig_mail_skipped", user=user.name, reason="user has no e-mail address")
        return False
    await mailer.send_kubeconfig(user, kubeconfig)
    return True


__all__ = ["ATTACHMENT_NAME", "SUBJECT", "Mailer", "deliver_kubeconfig"]
