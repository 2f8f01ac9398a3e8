import logging

import requests

import config

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"

ROLE_LABELS = {
    "collaborator": "Collaborator",
    "member": "Member",
    "viewer": "Viewer",
}

_BUTTON_STYLE = (
    "display:inline-block;margin-top:20px;padding:14px 28px;background-color:#4CAF50;"
    "color:white;text-decoration:none;font-weight:bold;border-radius:6px;"
)


def _layout(title: str, body: str, link: str, button: str, footer: str) -> str:
    return f"""
    <html>
      <body style="font-family: Arial, sans-serif; background-color: #f7f9fc; padding: 40px;">
        <div style="max-width: 600px; margin: auto; background: white; border-radius: 12px;
                    box-shadow: 0 4px 8px rgba(0,0,0,0.05); padding: 30px; text-align: center;">
          <h2 style="color: #333;">{title}</h2>
          <p style="font-size: 16px; color: #555;">{body}</p>
          <a href="{link}" style="{_BUTTON_STYLE}">{button}</a>
          <p style="margin-top: 30px; color:#777; font-size:14px;">{footer}</p>
        </div>
      </body>
    </html>
    """


def send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send through Resend. Returns False instead of raising on any failure."""
    if not config.RESEND_API_KEY or not config.FROM_EMAIL:
        logger.warning("RESEND_API_KEY or FROM_EMAIL is not set; email to %s not sent", to_email)
        return False

    try:
        resp = requests.post(
            RESEND_URL,
            headers={
                "Authorization": f"Bearer {config.RESEND_API_KEY}",
                "Content-Type": "application/json",
            },
            json={
                "from": config.FROM_EMAIL,
                "to": [to_email],
                "subject": subject,
                "html": html_body,
            },
            timeout=15,
        )
    except requests.RequestException:
        logger.exception("Email send error subject=%r to=%s", subject, to_email)
        return False

    if resp.status_code >= 400:
        logger.error("Resend rejected email to=%s status=%s body=%s", to_email, resp.status_code, resp.text)
        return False
    logger.info("Email sent to=%s subject=%r", to_email, subject)
    return True


def send_verification_email(to_email: str, token: str) -> bool:
    link = f"{config.PUBLIC_BASE_URL}/verify-email?token={token}"
    html = _layout(
        "Welcome to Tasktracker",
        "Thank you for signing up! Please verify your email address by clicking the button below:",
        link,
        "Verify Email",
        "If you didn't create this account, you can safely ignore this email.",
    )
    return send_email(to_email, "Verify your email", html)


def send_password_reset_email(to_email: str, token: str) -> bool:
    link = f"{config.APP_URL}/reset-password?token={token}"
    html = _layout(
        "Password reset",
        "You requested to reset your password. Click the button below to set a new one:",
        link,
        "Reset Password",
        "If you didn't request this, you can safely ignore this email.",
    )
    return send_email(to_email, "Reset your password", html)


def invitation_link(token: str) -> str:
    return f"{config.APP_URL}/invite/{token}"


def send_project_invitation_email(
    to_email: str, project_name: str, inviter_name: str, role: str, token: str, expires_at: str
) -> bool:
    html = _layout(
        f"Invitation to {project_name}",
        f"{inviter_name} invited you to join <b>{project_name}</b> as "
        f"{ROLE_LABELS.get(role, role)}.<br><br>The invitation expires at {expires_at}.",
        invitation_link(token),
        "Accept Invitation",
        "If you weren't expecting this invitation, you can ignore this email.",
    )
    return send_email(to_email, f"You're invited to {project_name}", html)
