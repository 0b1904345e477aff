"""
main.py – Entry point for the LinkedIn Inbox Bot.

Usage:
    python main.py [account]

On first run the browser opens the LinkedIn login page and waits for a
manual login.  The persistent profile keeps the session for later runs,
after which the inbox can be scraped, synced and answered from the menu
or left running in the background sync loop.
"""

from __future__ import annotations

import random
import sys
import time
import traceback

import schedule

from bot_utils import logger
from config import DEFAULT_SCRAPE_LIMIT, DEFAULT_SYNC_LIMIT, SYNC_LOOP_MINUTES
from service import InboxService

# ──────────────────────────────────────────────
# Scheduled Job
# ──────────────────────────────────────────────

service: InboxService | None = None
ACCOUNT = "default"


def scheduled_sync() -> None:
    """Wrapper executed by the scheduler."""
    if service is None:
        return
    try:
        status, payload = service.sync_conversations(ACCOUNT, {"limit": DEFAULT_SYNC_LIMIT})
        if status == 200:
            logger.info("Background sync: %d new messages", payload.get("newMessages", 0))
        else:
            logger.warning("Background sync skipped (%s): %s", payload.get("reason"),
                           payload.get("waitTime", payload.get("error")))
    except Exception as exc:
        logger.error("Scheduled sync error: %s\n%s", exc, traceback.format_exc())


def run_sync_loop() -> None:
    logger.info("Starting background sync loop …")
    print(
        f"\nBackground sync is running every ~{SYNC_LOOP_MINUTES[0]}-{SYNC_LOOP_MINUTES[1]} minutes.\n"
        "Press Ctrl+C to return.\n"
    )
    scheduled_sync()
    job = schedule.every(SYNC_LOOP_MINUTES[0]).to(SYNC_LOOP_MINUTES[1]).minutes.do(scheduled_sync)
    try:
        while True:
            schedule.run_pending()
            time.sleep(30)
    except KeyboardInterrupt:
        logger.info("Background sync stopped by user (Ctrl+C).")
    finally:
        schedule.cancel_job(job)


# ──────────────────────────────────────────────
# Console Helpers
# ──────────────────────────────────────────────

def _ask_limit(default: int) -> int:
    raw = input(f"How many conversations? [{default}]: ").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"\n  Not a number, using {default}.")
        return default


def _report(status: int, payload: dict) -> None:
    if status != 200:
        print(f"\n  ✗ {payload.get('reason')}: {payload.get('error', '')}")
        if "waitTime" in payload:
            print(f"    Try again in {payload['waitTime'] // 1000}s")
        return
    if "total" in payload:
        print(f"\n  ✓ {payload['succeeded']}/{payload['total']} conversations")
        if payload.get("newMessages"):
            print(f"    {payload['newMessages']} new messages")
        if payload.get("message"):
            print(f"    {payload['message']}")
        for err in payload.get("errors", []):
            print(f"    ✗ {err['conversation']}: {err['reason']}")


def show_conversations() -> None:
    _, payload = service.list_conversations(ACCOUNT)
    conversations = payload.get("conversations", [])
    if not conversations:
        print("\n  No conversations stored.")
        return

    print(f"\n  {'ID':<5} {'Contact':<30} {'Msgs':<6} {'Last Updated':<22} {'Last Message'}")
    print("  " + "─" * 100)
    for conv in conversations:
        last = (conv.get("lastMessage") or {}).get("message") or ""
        updated = (conv.get("lastUpdated") or "N/A")[:19]
        print(f"  {conv['id']:<5} {conv['contactName'][:28]:<30} {conv['messageCount']:<6} "
              f"{updated:<22} {last[:40]}")


def show_status() -> None:
    _, session = service.session_status(ACCOUNT)
    print(f"\n  Session: {session['state']} ({'valid' if session['valid'] else 'not valid'})")
    _, payload = service.rate_limit_status(ACCOUNT)
    status = payload.get("rateLimitStatus", {})
    print(f"\n  Pattern: {status.get('behaviorPattern')}   Confidence: {status.get('confidence', 0):.2f}")
    total = status.get("totalActivity", {})
    print(f"  Total this hour: {total.get('current')}/{total.get('limit')}")
    for name, check in status.get("checks", {}).items():
        entry = status.get(name, {})
        verdict = "ok" if check["allowed"] else f"wait {check['waitTime'] // 1000}s"
        print(f"  {name:<20} {entry.get('current')}/{entry.get('limit')} this hour   {verdict}")


# ──────────────────────────────────────────────
# Main
# ──────────────────────────────────────────────

def main() -> None:
    global service, ACCOUNT

    if len(sys.argv) > 1:
        ACCOUNT = sys.argv[1]

    print("\n" + "=" * 50)
    print("   LinkedIn Inbox Bot")
    print("=" * 50)

    service = InboxService()
    service.store.report_orphans()

    try:
        status, payload = service.login(ACCOUNT, wait=True)
        if status != 200:
            print(f"\nLogin failed: {payload.get('error')}")
            return
        profile = payload.get("profile") or {}
        print(f"\nLogged in as {profile.get('name', 'unknown')}")

        while True:
            choice = input(
                "\nWhat would you like to do?\n"
                "  [1] Scrape recent conversations\n"
                "  [2] Sync stored conversations\n"
                "  [3] Send a message\n"
                "  [4] View stored conversations\n"
                "  [5] Delete a stored conversation\n"
                "  [6] Rate limit status\n"
                "  [7] Start background sync loop\n"
                "  [8] Exit\n"
                "Choice (1-8): "
            ).strip()

            if choice == "1":
                _report(*service.scrape_conversations(ACCOUNT, {"limit": _ask_limit(DEFAULT_SCRAPE_LIMIT)}))
            elif choice == "2":
                _report(*service.sync_conversations(ACCOUNT, {"limit": _ask_limit(DEFAULT_SYNC_LIMIT)}))
            elif choice == "3":
                contact = input("Contact name: ").strip()
                text = input("Message: ").strip()
                status, payload = service.send_message(ACCOUNT, {"contactName": contact, "message": text})
                if status == 200:
                    print("\n  ✓ Message sent." if payload["verified"] else f"\n  ? {payload['warning']}")
                else:
                    _report(status, payload)
            elif choice == "4":
                show_conversations()
            elif choice == "5":
                raw = input("Conversation ID: ").strip()
                if not raw.isdigit():
                    print("\n  Error: Invalid ID")
                    continue
                status, payload = service.delete_conversation(ACCOUNT, int(raw))
                if status == 200:
                    print(f"\n  ✓ Deleted ({payload['deletedMessages']} messages)")
                else:
                    _report(status, payload)
            elif choice == "6":
                show_status()
            elif choice == "7":
                run_sync_loop()
            elif choice == "8":
                print("Goodbye.")
                return
            else:
                print("\n  Unknown choice.")
            # Small idle gap between menu actions
            time.sleep(random.uniform(0.5, 1.5))

    except KeyboardInterrupt:
        logger.info("Bot stopped by user (Ctrl+C).")
        print("\nBot stopped.")
    except Exception as exc:
        logger.error("Fatal error: %s\n%s", exc, traceback.format_exc())
    finally:
        service.sessions.close_all()
        service = None


if __name__ == "__main__":
    main()
