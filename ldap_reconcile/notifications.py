"""
Email notification utilities for LDAP Reconcile.

Sends operator alerts when a sync pass fails and, optionally, a summary after
every run.
"""

import logging
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, List

from ldap_reconcile.models import SyncResult

logger = logging.getLogger(__name__)

FOOTER = "This is an automated message from LDAP Reconcile."


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send an email notification over SMTP.

    Args:
        subject: Email subject line
        body: Plain-text body
        config: ``notifications`` configuration section

    Returns:
        True if the email was sent, False if disabled, misconfigured or failed
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])
    if isinstance(email_to, str):
        email_to = [email_to]

    if not smtp_server:
        logger.error("SMTP server not configured")
        return False
    if not email_to:
        logger.error("No email recipients configured")
        return False

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        if smtp_port == 465:
            server = smtplib.SMTP_SSL(smtp_server, smtp_port)
        else:
            server = smtplib.SMTP(smtp_server, smtp_port)
            if config.get('smtp_tls', True):
                server.starttls()
        try:
            if smtp_username and smtp_password:
                server.login(smtp_username, smtp_password)
            server.sendmail(email_from, email_to, msg.as_string())
        finally:
            server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent: {subject}")
    return True


def send_sync_failure(result: SyncResult, config: Dict[str, Any]) -> bool:
    """Alert operators that a pass aborted, naming the entity that failed."""
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    entity_id = getattr(result.error, 'entity_id', None) or 'n/a'
    body_lines = [
        "LDAP Reconcile Failure Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        f"Source: {result.source}",
        f"Pass: {result.operation}",
        f"Failed entity: {entity_id}",
        f"Error: {result.error}",
        "",
        "Progress before the failure:",
    ]
    body_lines.extend(f"  {name}: {value}" for name, value in result.counts.items())
    body_lines.extend([
        "",
        "Entities committed before the failure stay committed. Fix the cause and",
        "run the pass again; it resumes where it stopped.",
        "",
        FOOTER,
    ])
    return send_email(f"LDAP Reconcile Alert: {result.source} {result.operation} failed",
                      '\n'.join(body_lines), config)


def send_failure_notification(title: str, error_message: str, config: Dict[str, Any]) -> bool:
    """Alert operators about a failure outside any single pass (configuration, directory connection)."""
    if not config.get('email_on_failure', True):
        return False
    body = '\n'.join([
        "LDAP Reconcile Failure Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        "",
        "No sync pass was run.",
        "",
        FOOTER,
    ])
    return send_email(f"LDAP Reconcile Alert: {title}", body, config)


def send_run_summary(results: List[SyncResult], runtime_seconds: float, config: Dict[str, Any]) -> bool:
    """Send the per-pass summary of a completed run, if enabled."""
    if not config.get('email_on_success', False):
        logger.debug("Success email notifications disabled")
        return False

    failed = [result for result in results if not result.success]
    body_lines = [
        "LDAP Reconcile Summary Report",
        f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"Runtime: {runtime_seconds:.2f} seconds",
        f"Passes: {len(results)} run, {len(failed)} failed",
        "",
    ]
    body_lines.extend(f"  {result.summary}" for result in results)
    body_lines.extend(["", FOOTER])

    status = 'completed with failures' if failed else 'completed'
    return send_email(f"LDAP Reconcile: run {status}", '\n'.join(body_lines), config)


def test_notification_config(config: Dict[str, Any]) -> bool:
    """Send a test email so operators can check the SMTP settings."""
    email_to = config.get('email_to', [])
    if isinstance(email_to, str):
        email_to = [email_to]
    body = '\n'.join([
        "This is a test email from LDAP Reconcile.",
        "",
        "If you receive this message, email notifications are working.",
        "",
        f"SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"From Address: {config.get('email_from', 'not configured')}",
        f"Recipients: {', '.join(email_to)}",
        "",
        FOOTER,
    ])
    # Bypass the enable flag so the test works before email is switched on
    return send_email("LDAP Reconcile: Configuration Test", body, dict(config, enable_email=True))
