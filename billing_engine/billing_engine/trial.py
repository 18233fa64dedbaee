"""Trial eligibility engine.

A firm gets a metered free trial once per device and once per network
(IP prefix).  :func:`check_eligibility` is a read-only decision;
:func:`record_activation` merges a confirmed activation into the device
and IP-prefix records.

Store errors propagate so the caller fails closed.  Abuse alerts and
new-firm notifications fail open: they are logged and never change the
decision.  Alerts are sent from background tasks so a slow mail provider
never delays the eligibility response; :func:`drain_abuse_alerts` waits
for the ones still in flight.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from billing_engine.idempotency import KeyValueTTLCache
from billing_engine.state.repository import TrialRepository

logger = logging.getLogger(__name__)

LOCALHOST = "localhost"
ABUSE_ALERT_COOLDOWN_SECONDS = 3600.0

# Checked in order; the first present header wins.
_CLIENT_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip", "x-client-ip")

AbuseAlertSender = Callable[[str, int, list[str]], Awaitable[object]]

# Strong references keep scheduled alerts alive until they finish.
_pending_alerts: set[asyncio.Task[None]] = set()


class TrialBlockReason(str, Enum):
    DEVICE_USED = "DEVICE_USED"
    NETWORK_USED = "NETWORK_USED"


@dataclass(frozen=True)
class TrialDecision:
    eligible: bool
    ip_prefix: str
    reason: TrialBlockReason | None = None


def get_ip_prefix(ip: str) -> str:
    """Coarse network identity of *ip*.

    IPv4 and IPv4-mapped IPv6 addresses keep their first three octets,
    IPv6 addresses their first three groups.  Loopback literals map to
    ``"localhost"``; anything unparseable is returned unchanged.
    """
    ip = ip.strip()
    if ip in ("::1", "127.0.0.1"):
        return LOCALHOST

    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return ip

    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        addr = addr.ipv4_mapped

    if isinstance(addr, ipaddress.IPv4Address):
        return ".".join(str(addr).split(".")[:3])
    return ":".join(ip.split(":")[:3])


def client_ip(headers: Mapping[str, str]) -> str:
    """Best-effort client address from proxy headers, else ``"unknown"``."""
    for name in _CLIENT_IP_HEADERS:
        value = headers.get(name)
        if value:
            # x-forwarded-for is a list; the first entry is the client.
            return value.split(",")[0].strip()
    return "unknown"


def pending_abuse_alerts() -> int:
    """Number of abuse alerts scheduled but not yet finished."""
    return len(_pending_alerts)


async def drain_abuse_alerts() -> None:
    """Wait for every abuse alert still in flight."""
    while _pending_alerts:
        await asyncio.gather(*list(_pending_alerts), return_exceptions=True)


async def _send_alert(send: AbuseAlertSender, ip_prefix: str, linked_firms: list[str]) -> None:
    try:
        await send(ip_prefix, len(linked_firms) + 1, linked_firms)
    except Exception:
        logger.warning("Abuse alert for %s failed", ip_prefix, exc_info=True)


class TrialEngine:
    """Eligibility checks and activation recording against the trial store.

    Parameters
    ----------
    repo:
        Trial repository bound to the request's session.
    cooldown_cache:
        TTL cache used to send at most one abuse alert per IP prefix per
        cooldown window.
    send_abuse_alert:
        Coroutine ``(ip_prefix, attempt_count, linked_firms)`` run as a
        background task; failures are logged and swallowed.
    cooldown_seconds:
        Abuse-alert cooldown window.
    """

    def __init__(
        self,
        repo: TrialRepository,
        cooldown_cache: KeyValueTTLCache,
        send_abuse_alert: AbuseAlertSender | None = None,
        cooldown_seconds: float = ABUSE_ALERT_COOLDOWN_SECONDS,
    ) -> None:
        self._repo = repo
        self._cooldown = cooldown_cache
        self._send_abuse_alert = send_abuse_alert
        self._cooldown_seconds = cooldown_seconds

    async def _device_blocked(self, device_id: str, firm_id: str | None) -> bool:
        record = await self._repo.get_device(device_id)
        if record is None or record.is_whitelisted:
            return False
        return bool(record.firm_activated) and record.firm_activated != firm_id

    async def check_eligibility(
        self,
        *,
        device_id: str,
        user_id: str,
        ip: str,
        firm_id: str | None = None,
        persistent_device_id: str | None = None,
    ) -> TrialDecision:
        """Decide whether the caller may start a trial.  Read-only."""
        ip_prefix = get_ip_prefix(ip)

        if await self._device_blocked(device_id, firm_id):
            logger.info("Trial blocked for user %s: device already used", user_id)
            return TrialDecision(eligible=False, ip_prefix=ip_prefix, reason=TrialBlockReason.DEVICE_USED)

        if persistent_device_id and persistent_device_id != device_id:
            if await self._device_blocked(persistent_device_id, firm_id):
                logger.info("Trial blocked for user %s: persistent device already used", user_id)
                return TrialDecision(eligible=False, ip_prefix=ip_prefix, reason=TrialBlockReason.DEVICE_USED)

        ip_record = await self._repo.get_ip(ip_prefix)
        if ip_record is not None and not ip_record.is_whitelisted:
            linked = list(ip_record.linked_firm_ids or [])
            if linked and (firm_id is None or firm_id not in linked):
                await self._maybe_alert(ip_prefix, linked)
                logger.info("Trial blocked for user %s: network %s already used", user_id, ip_prefix)
                return TrialDecision(eligible=False, ip_prefix=ip_prefix, reason=TrialBlockReason.NETWORK_USED)

        return TrialDecision(eligible=True, ip_prefix=ip_prefix)

    async def _maybe_alert(self, ip_prefix: str, linked_firms: list[str]) -> None:
        if self._send_abuse_alert is None:
            return
        try:
            first = await self._cooldown.add(f"abuse_alert:{ip_prefix}", {"sent": True}, self._cooldown_seconds)
        except Exception:
            logger.warning("Abuse alert cooldown for %s unavailable", ip_prefix, exc_info=True)
            return
        if not first:
            return
        task = asyncio.get_running_loop().create_task(_send_alert(self._send_abuse_alert, ip_prefix, linked_firms))
        _pending_alerts.add(task)
        task.add_done_callback(_pending_alerts.discard)

    async def record_activation(
        self,
        *,
        device_id: str,
        firm_id: str,
        user_id: str,
        ip: str,
        persistent_device_id: str | None = None,
    ) -> str:
        """Union-merge a confirmed trial activation.  Returns the IP prefix."""
        ip_prefix = get_ip_prefix(ip)
        await self._repo.record_device_activation(
            device_id,
            firm_id=firm_id,
            user_id=user_id,
            ip_prefix=ip_prefix,
            persistent_device_id=persistent_device_id,
        )
        if persistent_device_id and persistent_device_id != device_id:
            await self._repo.record_device_activation(
                persistent_device_id,
                firm_id=firm_id,
                user_id=user_id,
                ip_prefix=ip_prefix,
                linked_to_fingerprint=device_id,
            )
        await self._repo.merge_ip_activation(ip_prefix, firm_id=firm_id, device_id=device_id, user_id=user_id)
        logger.info("Trial activation recorded for firm %s on %s", firm_id, ip_prefix)
        return ip_prefix
