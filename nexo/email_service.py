"""
Email Service using Resend
Billing lifecycle emails rendered from a shared MJML layout
"""

import html
import logging
from typing import Optional, Union

import resend
from mjml import mjml_to_html

from .config import EMAIL_FROM_ADDRESS, RESEND_API_KEY

logger = logging.getLogger(__name__)

resend.api_key = RESEND_API_KEY

THEME = {
    "primary": "#4f46e5",
    "background": "#f8fafc",
    "card_bg": "#ffffff",
    "text_primary": "#0f172a",
    "text_muted": "#64748b",
}


def base_template(
    title: str,
    paragraphs: list,
    cta_url: Optional[str] = None,
    cta_label: Optional[str] = None,
) -> str:
    """Base MJML layout shared by every billing email"""
    body = "\n".join(
        f'<mj-text font-size="15px" line-height="1.6" color="{THEME["text_primary"]}">{html.escape(p)}</mj-text>'
        for p in paragraphs
    )

    cta_section = ""
    if cta_url and cta_label:
        cta_section = f"""
        <mj-button href="{html.escape(cta_url)}" background-color="{THEME['primary']}"
          color="#ffffff" border-radius="8px" font-weight="600">
          {html.escape(cta_label)}
        </mj-button>
        """

    return f"""
    <mjml>
      <mj-head>
        <mj-title>{html.escape(title)}</mj-title>
      </mj-head>
      <mj-body background-color="{THEME['background']}">
        <mj-section background-color="{THEME['card_bg']}" padding="32px 24px">
          <mj-column>
            <mj-text font-size="22px" font-weight="700" color="{THEME['text_primary']}">{html.escape(title)}</mj-text>
            {body}
            {cta_section}
            <mj-text font-size="12px" color="{THEME['text_muted']}">Nexo</mj-text>
          </mj-column>
        </mj-section>
      </mj-body>
    </mjml>
    """


def compile_mjml_to_html(mjml_content: str) -> str:
    """Compile MJML template to production-ready HTML"""
    try:
        result = mjml_to_html(mjml_content)
        if isinstance(result, dict):
            if result.get("errors"):
                logger.warning(f"MJML compilation warnings: {result['errors']}")
            return result.get("html", "")
        return str(result)
    except Exception as e:
        logger.error(f"MJML compilation error: {e}")
        raise Exception(f"Failed to compile MJML template: {str(e)}") from e


async def send_email(
    to: Union[str, list[str]],
    subject: str,
    mjml_content: str,
    from_address: Optional[str] = None,
) -> dict:
    """
    Send an email through Resend

    Args:
        to: Recipient email(s)
        subject: Email subject line
        mjml_content: MJML template content (will be compiled to HTML)
        from_address: Optional custom from address

    Returns:
        Send response dict
    """
    html_content = compile_mjml_to_html(mjml_content)
    recipients = [to] if isinstance(to, str) else to

    if not RESEND_API_KEY:
        logger.error("❌ No email service configured - RESEND_API_KEY missing")
        raise Exception("Email service not configured")

    try:
        logger.info(f"📧 Sending email via Resend to: {to}")
        response = resend.Emails.send(
            {
                "from": from_address or EMAIL_FROM_ADDRESS,
                "to": recipients,
                "subject": subject,
                "html": html_content,
            }
        )
        logger.info(f"✅ Email sent successfully via Resend: {response}")
        return response
    except Exception as e:
        logger.error(f"❌ Email send error to {recipients}: {e}")
        raise Exception(f"Failed to send email: {str(e)}") from e
