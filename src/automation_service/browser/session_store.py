"""Per-domain persistence of browser session state (cookies + local storage)."""

from __future__ import annotations

import json
import logging
from typing import Any

from automation_service.storage.base import TaskStorage
from automation_service.storage.models import SessionSnapshot

logger = logging.getLogger(__name__)

_READ_LOCAL_STORAGE_JS = """
() => {
    const data = {};
    for (let i = 0; i < window.localStorage.length; i++) {
        const key = window.localStorage.key(i);
        data[key] = window.localStorage.getItem(key);
    }
    return data;
}
"""


_RESTORED_MARKER = "__automation_session_restored"


def local_storage_init_script(entries: dict[str, str], domain: str) -> str:
    """Init script that seeds ``domain``'s window.localStorage before page scripts run.

    Init scripts run in every frame of every origin, so the script only acts
    when the frame's host is ``domain`` or one of its subdomains. It seeds once
    per tab (a sessionStorage marker) and never overwrites a key the page
    already holds.
    """
    host = domain.strip().lstrip(".").lower()
    return (
        "(() => {\n"
        f"    const domain = {json.dumps(host)};\n"
        "    const host = window.location.hostname.toLowerCase();\n"
        '    if (host !== domain && !host.endsWith("." + domain)) {\n'
        "        return;\n"
        "    }\n"
        f"    const marker = {json.dumps(_RESTORED_MARKER)};\n"
        "    if (window.sessionStorage.getItem(marker) !== null) {\n"
        "        return;\n"
        "    }\n"
        '    window.sessionStorage.setItem(marker, "1");\n'
        f"    const entries = {json.dumps(entries)};\n"
        "    for (const [key, value] of Object.entries(entries)) {\n"
        "        if (window.localStorage.getItem(key) === null) {\n"
        "            window.localStorage.setItem(key, value);\n"
        "        }\n"
        "    }\n"
        "})();"
    )


class SessionStore:
    """Capture and restore cookies/local storage keyed by domain.

    Snapshots are written wholesale: saving a domain replaces whatever was
    stored for it before, there is no cookie-level merge.
    """

    def __init__(self, storage: TaskStorage) -> None:
        self._storage = storage

    async def save_user_data(self, context: Any, page: Any, domain: str) -> bool:
        """Snapshot the context's cookies and the page's local storage under ``domain``.

        Failures are logged and reported as False so a login flow is never
        aborted by a session write.
        """
        try:
            cookies = await context.cookies()
            local_storage = await page.evaluate(_READ_LOCAL_STORAGE_JS.strip()) if page else {}
            snapshot = SessionSnapshot(cookies=list(cookies), local_storage=local_storage or {})
            await self._storage.save_session(domain, snapshot)
        except Exception as exc:  # noqa: BLE001
            logger.warning("session event=save_failed domain=%s reason=%s", domain, exc)
            return False
        logger.info(
            "session event=saved domain=%s cookies=%d local_storage_keys=%d",
            domain,
            len(snapshot.cookies),
            len(snapshot.local_storage),
        )
        return True

    async def load_stored_user_data(self, context: Any, domain: str) -> bool:
        """Re-apply a stored snapshot to ``context``; False when nothing is stored."""
        try:
            snapshot = await self._storage.load_session(domain)
            if snapshot is None:
                logger.info("session event=not_found domain=%s", domain)
                return False
            if snapshot.cookies:
                await context.add_cookies(snapshot.cookies)
            if snapshot.local_storage:
                await context.add_init_script(
                    script=local_storage_init_script(snapshot.local_storage, domain)
                )
        except Exception as exc:  # noqa: BLE001
            logger.warning("session event=restore_failed domain=%s reason=%s", domain, exc)
            return False
        logger.info(
            "session event=restored domain=%s cookies=%d local_storage_keys=%d",
            domain,
            len(snapshot.cookies),
            len(snapshot.local_storage),
        )
        return True
