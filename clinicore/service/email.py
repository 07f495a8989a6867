from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Optional

from clinicore.logging import get_logger, mask_email

logger = get_logger(__name__)

_TWO_FACTOR_COPY = {
    "es": {
        "subject": "Tu código de verificación",
        "title": "Código de verificación",
        "intro": "Usa este código para completar tu inicio de sesión:",
        "expiry": "El código vence en {minutes} minutos.",
        "ignore": "Si no intentaste iniciar sesión, puedes ignorar este mensaje.",
    },
    "en": {
        "subject": "Your verification code",
        "title": "Verification code",
        "intro": "Use this code to finish signing in:",
        "expiry": "The code expires in {minutes} minutes.",
        "ignore": "If you did not try to sign in, you can ignore this message.",
    },
}

_INVITATION_COPY = {
    "es": {
        "subject": "Te invitaron a unirte a un equipo",
        "intro": "{inviter} te invitó a su equipo como {role}.",
        "action": "Crear mi cuenta",
        "expiry": "La invitación vence en {days} días.",
    },
    "en": {
        "subject": "You have been invited to join a team",
        "intro": "{inviter} invited you to their team as {role}.",
        "action": "Create my account",
        "expiry": "The invitation expires in {days} days.",
    },
}

_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .code { font-size: 32px; letter-spacing: 8px; font-weight: 700; }
        .button { display: inline-block; background: #0f766e; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 40px; font-size: 12px; color: #5b6470; }
"""


class EmailService:
    """Transactional email over SMTP.

    Sends two-factor codes and staff invitations in Spanish or English.
    Without an SMTP host it logs the message instead of sending it.
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Clinicore",
        base_url: Optional[str] = None,
        default_locale: str = "es",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")
        self.default_locale = default_locale

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _locale(self, locale: Optional[str]) -> str:
        return locale if locale in _TWO_FACTOR_COPY else self.default_locale

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info("email_dev_mode", to=mask_email(to_email), subject=subject)
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=mask_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=mask_email(to_email), subject=subject)
        return True

    def send_two_factor_code(
        self, to_email: str, code: str, expires_minutes: int, locale: str
    ) -> bool:
        copy = _TWO_FACTOR_COPY[self._locale(locale)]
        expiry = copy["expiry"].format(minutes=expires_minutes)
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <h1>{copy["title"]}</h1>
        <p>{copy["intro"]}</p>
        <p class="code">{escape(code)}</p>
        <p>{expiry}</p>
        <div class="footer"><p>{copy["ignore"]}</p><p>{escape(self.from_name)}</p></div>
    </div>
</body>
</html>
"""
        text_body = f"""{copy["title"]}

{copy["intro"]}

    {code}

{expiry}

{copy["ignore"]}
"""
        return self._send_email(to_email, copy["subject"], html_body, text_body)

    def send_staff_invitation(
        self,
        to_email: str,
        token: str,
        *,
        inviter_name: str,
        role: str,
        expires_days: int,
        locale: Optional[str] = None,
    ) -> bool:
        copy = _INVITATION_COPY[self._locale(locale)]
        invite_url = invitation_url(self.base_url, token)
        intro = copy["intro"].format(inviter=escape(inviter_name), role=escape(role))
        expiry = copy["expiry"].format(days=expires_days)
        html_body = f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <p>{intro}</p>
        <p style="margin: 30px 0;"><a href="{invite_url}" class="button">{copy["action"]}</a></p>
        <p>{expiry}</p>
        <div class="footer"><p>{invite_url}</p></div>
    </div>
</body>
</html>
"""
        text_body = f"""{intro}

{invite_url}

{expiry}
"""
        return self._send_email(to_email, copy["subject"], html_body, text_body)


def invitation_url(base_url: str, token: str) -> str:
    return f"{base_url.rstrip('/')}/register?invite={token}"
