"""
E-mail notifications for Extension Attribute Sync.

Three kinds of mail go out over SMTP: an alert when a run aborts, a run
summary (on errors, or on every run with email_on_success) and a test mail
for checking the SMTP settings. A notification that cannot be delivered is
logged and reported as False; it never raises.
"""

import smtplib
import logging
from email.message import EmailMessage
from typing import Dict, List, Any, Optional
from datetime import datetime

from extattr_sync.models import SyncResult, SyncStatus

logger = logging.getLogger(__name__)

PRODUCT = "Extension Attribute Sync"
MAX_LISTED_FAILURES = 10
FOOTER = f"This is an automated message from {PRODUCT}."


def _recipients(config: Dict[str, Any]) -> List[str]:
    email_to = config.get('email_to') or []
    if isinstance(email_to, str):
        return [email_to]
    return list(email_to)


def _format_runtime(seconds: float) -> str:
    if seconds > 60:
        return f"{int(seconds // 60)}m {seconds % 60:.1f}s"
    return f"{seconds:.2f} seconds"


def _compose(heading: str, fields: Dict[str, Any], sections: Optional[Dict[str, List[str]]] = None,
             closing: Optional[str] = None) -> str:
    """Lay out a plain-text mail: heading, key/value fields, titled sections, footer."""
    lines = [heading, f"Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}", ""]
    lines.extend(f"{key}: {value}" for key, value in fields.items())
    lines.append("")
    for title, entries in (sections or {}).items():
        if not entries:
            continue
        lines.append(f"{title}:")
        lines.extend(f"  {entry}" for entry in entries)
        lines.append("")
    if closing:
        lines.extend([closing, ""])
    lines.append(FOOTER)
    return '\n'.join(lines)


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Deliver one plain-text mail.

    Port 465 uses implicit TLS; any other port uses STARTTLS unless smtp_tls
    is false. Login happens only when both smtp_username and smtp_password
    are set.

    Args:
        subject: Subject line
        body: Message body
        config: The notifications configuration section

    Returns:
        True if the SMTP server accepted the message
    """
    if not config.get('enable_email', True):
        logger.debug(f"Email disabled, not sending '{subject}'")
        return False

    smtp_server = config.get('smtp_server')
    recipients = _recipients(config)
    if not smtp_server:
        logger.error("SMTP server not configured")
        return False
    if not recipients:
        logger.error("No email recipients configured")
        return False

    smtp_port = config.get('smtp_port', 587)
    username = config.get('smtp_username')
    password = config.get('smtp_password')
    sender = config.get('email_from', username)

    message = EmailMessage()
    message['From'] = sender
    message['To'] = ', '.join(recipients)
    message['Subject'] = subject
    message.set_content(body)

    implicit_tls = smtp_port == 465
    smtp_class = smtplib.SMTP_SSL if implicit_tls else smtplib.SMTP
    try:
        with smtp_class(smtp_server, smtp_port) as server:
            if not implicit_tls and config.get('smtp_tls', True):
                server.starttls()
            if username and password:
                server.login(username, password)
            server.sendmail(sender, recipients, message.as_string())
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Could not send '{subject}' via {smtp_server}:{smtp_port}: {e}")
        return False

    logger.info(f"Sent '{subject}' to {len(recipients)} recipient(s)")
    return True


def send_failure_notification(title: str, error_message: str, config: Dict[str, Any],
                              additional_info: Optional[Dict[str, Any]] = None) -> bool:
    """Alert that a run was aborted; honours email_on_failure."""
    if not config.get('email_on_failure', True):
        logger.debug("Failure notifications disabled")
        return False

    body = _compose(
        f"{PRODUCT} Failure Report",
        {'Failure Type': title, 'Error Message': error_message},
        {'Additional Information': [f"{key}: {value}" for key, value in (additional_info or {}).items()]},
        closing="Please check the application logs for more detailed information."
    )
    return send_email(f"{PRODUCT} Alert: {title}", body, config)


def send_session_failure(system: str, error_message: str, config: Dict[str, Any], retry_count: int = 0) -> bool:
    """
    Alert that a directory session could not be established.

    Args:
        system: 'LDAP' or 'Microsoft Graph'
        error_message: Error description
        config: The notifications configuration section
        retry_count: Retries attempted before giving up
    """
    return send_failure_notification(
        f"{system} Connection Failed", error_message, config,
        {
            'Component': f"{system} Connection",
            'Retry Attempts': retry_count,
            'Impact': 'Sync aborted before any object was processed'
        }
    )


def send_sync_summary(summary: Dict[str, int], results: List[SyncResult], runtime_seconds: float,
                      preview: bool, config: Dict[str, Any]) -> bool:
    """
    Mail the outcome of a run.

    Sent when any object ended in Error, or after every run if
    email_on_success is set. At most MAX_LISTED_FAILURES failed objects are
    listed by name.

    Args:
        summary: Per-status counts from summarize_results
        results: All results of the run
        runtime_seconds: Wall-clock duration of the run
        preview: Whether the run was a preview
        config: The notifications configuration section
    """
    errors = [result for result in results if result.status is SyncStatus.ERROR]
    if not errors and not config.get('email_on_success', False):
        logger.debug("No errors and email_on_success is off, summary not sent")
        return False

    mode = "Preview" if preview else "Apply"
    failed = [f"{i}. {result.subject_name}: {result.detail}"
              for i, result in enumerate(errors[:MAX_LISTED_FAILURES], 1)]
    if len(errors) > MAX_LISTED_FAILURES:
        failed.append(f"... and {len(errors) - MAX_LISTED_FAILURES} more errors")

    body = _compose(
        f"{PRODUCT} Summary Report",
        {'Mode': mode, 'Runtime': _format_runtime(runtime_seconds)},
        {
            'Results': [f"{status}: {count}" for status, count in summary.items()],
            'Failed objects': failed
        }
    )

    if errors:
        subject = f"{PRODUCT}: {len(errors)} errors ({mode})"
    else:
        subject = f"{PRODUCT}: Successful Completion ({mode})"
    return send_email(subject, body, config)


def send_test_notification(config: Dict[str, Any]) -> bool:
    """Send a test mail describing the SMTP settings in use."""
    body = _compose(
        f"{PRODUCT} Configuration Test",
        {
            'SMTP Server': config.get('smtp_server', 'not configured'),
            'SMTP Port': config.get('smtp_port', 'not configured'),
            'From Address': config.get('email_from', 'not configured'),
            'Recipients': ', '.join(_recipients(config)) or 'not configured'
        },
        closing="If you receive this message, email notifications are configured correctly."
    )

    sent = send_email(f"{PRODUCT}: Configuration Test", body, config)
    if sent:
        logger.info("Test notification sent")
    else:
        logger.error("Test notification failed")
    return sent
