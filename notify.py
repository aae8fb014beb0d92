"""
Notification senders for is-latest: ntfy.sh and generic outgoing webhook.

A notification is sent once per run when at least one container is not on
the latest image.  Failures are always logged as warnings and never re-raised
so that a broken notification channel cannot interrupt the check.
"""

import json
import logging
import string
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10  # seconds

_NTFY_PRIORITIES = {'min', 'low', 'default', 'high', 'urgent'}


def _build_payload(results: List[Dict[str, str]]) -> Dict[str, Any]:
    """Return the standard dict passed to every sender."""
    outdated = [r for r in results if r['is_latest'] == 'no']
    unknown = [r for r in results if r['is_latest'] == 'unknown']
    return {
        'event': 'outdated_containers',
        'checked': len(results),
        'outdated': outdated,
        'unknown_count': len(unknown),
    }


def _summary_lines(payload: Dict[str, Any]) -> List[str]:
    return [f"{r['container']} ({r['image']})" for r in payload['outdated']]


def send_ntfy(cfg: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """POST a notification to an ntfy topic URL.

    Config keys:
        url      (required) Full ntfy topic URL, e.g. https://ntfy.sh/my-topic
        priority (optional) min / low / default / high / urgent  (default: default)
        headers  (optional) Extra HTTP headers dict (e.g. {"Authorization": "Bearer token"})
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("ntfy: no URL configured, skipping")
        return False

    count = len(payload['outdated'])
    title = f"is-latest: {count} container(s) not on latest"
    message = "\n".join(_summary_lines(payload))
    if payload['unknown_count']:
        message += f"\n({payload['unknown_count']} could not be checked)"

    priority = cfg.get('priority', 'default')
    if priority not in _NTFY_PRIORITIES:
        priority = 'default'

    headers: Dict[str, str] = {
        'Title': title,
        'Priority': priority,
        'Tags': 'package',
        'Content-Type': 'text/plain',
    }
    for k, v in (cfg.get('headers') or {}).items():
        headers[str(k)] = str(v)

    try:
        response = requests.post(url, data=message.encode('utf-8'),
                                 headers=headers, timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.info("ntfy: notification sent for %d container(s)", count)
        return True
    except requests.RequestException as e:
        logger.warning("ntfy: failed to send notification: %s", e)
        return False


def send_webhook(cfg: Dict[str, Any], payload: Dict[str, Any]) -> bool:
    """POST (or PUT) a notification payload to a webhook URL.

    Config keys:
        url           (required) Webhook URL
        method        (optional) HTTP method, POST (default) or PUT
        headers       (optional) Dict of extra request headers
        body_template (optional) Python string.Template body.
                                 Available variables: $event, $checked,
                                 $outdated_count, $unknown_count, $containers.
                                 If omitted, the raw payload JSON is sent.
    """
    url = (cfg.get('url') or '').strip()
    if not url:
        logger.warning("webhook: no URL configured, skipping")
        return False

    method = (cfg.get('method') or 'POST').upper()
    extra_headers: Dict[str, str] = {str(k): str(v) for k, v in (cfg.get('headers') or {}).items()}
    body_template: Optional[str] = cfg.get('body_template')

    headers: Dict[str, str] = {'Content-Type': 'application/json'}
    headers.update(extra_headers)

    if body_template:
        try:
            body_str = string.Template(body_template).safe_substitute(
                event=payload['event'],
                checked=payload['checked'],
                outdated_count=len(payload['outdated']),
                unknown_count=payload['unknown_count'],
                containers=', '.join(_summary_lines(payload)),
            )
        except (KeyError, ValueError) as e:
            logger.warning("webhook: body_template substitution failed: %s, sending raw payload", e)
            body_str = json.dumps(payload)
        data = body_str.encode('utf-8')
    else:
        data = json.dumps(payload).encode('utf-8')

    try:
        response = requests.request(method, url, data=data,
                                    headers=headers, timeout=_REQUEST_TIMEOUT)
        response.raise_for_status()
        logger.info("webhook: notification sent for %d container(s)", len(payload['outdated']))
        return True
    except requests.RequestException as e:
        logger.warning("webhook: failed to send notification: %s", e)
        return False


def send_notifications(notif_cfg: Optional[Dict[str, Any]],
                       results: List[Dict[str, str]]) -> None:
    """Dispatch a run summary to all configured channels.

    Safe to call unconditionally: exits immediately when notif_cfg is empty
    or every container is on latest.  Sender errors are logged, never re-raised.
    """
    if not notif_cfg:
        return

    payload = _build_payload(results)
    if not payload['outdated']:
        return

    ntfy_cfg = notif_cfg.get('ntfy')
    if ntfy_cfg and ntfy_cfg.get('url'):
        try:
            send_ntfy(ntfy_cfg, payload)
        except Exception as e:
            logger.warning("ntfy: unexpected error: %s", e)

    webhook_cfg = notif_cfg.get('webhook')
    if webhook_cfg and webhook_cfg.get('url'):
        try:
            send_webhook(webhook_cfg, payload)
        except Exception as e:
            logger.warning("webhook: unexpected error: %s", e)
