#!/usr/bin/env python3
"""
Setup Verification Script

Checks configuration and connectivity before starting the bot:
environment variables, PostgreSQL, Redis, the Anthropic key and the
Google Calendar token.

Usage:
    python scripts/verify_setup.py
"""

import asyncio
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Load environment variables before settings are built
from dotenv import load_dotenv
load_dotenv(project_root / ".env")

GREEN = "\033[92m"
RED = "\033[91m"
YELLOW = "\033[93m"
RESET = "\033[0m"


def print_header(title: str) -> None:
    print(f"\n{'='*60}")
    print(f" {title}")
    print(f"{'='*60}")


def print_result(name: str, success: bool, message: str = "") -> None:
    status = f"{GREEN}[PASS]{RESET}" if success else f"{RED}[FAIL]{RESET}"
    msg = f" - {message}" if message else ""
    print(f"  {status} {name}{msg}")


def mask(value: str) -> str:
    return f"{value[:8]}...{value[-4:]}" if len(value) > 12 else "***"


def check_env_vars() -> dict[str, bool]:
    """Report which settings come from the environment."""
    results = {}

    variables = [
        ("DATABASE_URL", True, "PostgreSQL connection (asyncpg)"),
        ("ANTHROPIC_API_KEY", True, "message interpretation"),
        ("REDIS_URL", False, "conversation locks, falls back to local locks"),
        ("GOOGLE_CALENDAR_ACCESS_TOKEN", False, "calendar sync, disabled without it"),
    ]

    for var, required, purpose in variables:
        value = os.getenv(var, "")
        if not value:
            print_result(var, not required, f"Not set ({purpose})")
            results[var] = False
            continue

        shown = mask(value) if "KEY" in var or "TOKEN" in var else value
        print_result(var, True, f"Set ({shown})")
        results[var] = True

    return results


def show_business_settings() -> None:
    from appointment_bot.config import get_settings

    s = get_settings()
    print(f"  Business:  {s.business_name} ({s.business_address})")
    print(f"  Assistant: {s.assistant_name}")
    print(f"  Timezone:  {s.business_timezone}")
    print(f"  Hours:     {s.business_start_hour:02d}:00-{s.business_end_hour:02d}:00, "
          f"{s.appointment_duration_minutes} min slots")
    print(f"  Pause:     {s.default_pause_hours}h after operator reply")


async def check_postgres() -> bool:
    try:
        from appointment_bot.infra.database import check_db_health
        healthy = await check_db_health()
    except Exception as e:
        print_result("PostgreSQL", False, str(e)[:60])
        return False

    print_result("PostgreSQL", healthy, "Connection successful" if healthy else "Connection failed")
    return healthy


async def check_redis() -> bool:
    from appointment_bot.infra.redis import RedisClient, check_redis_health

    healthy = await check_redis_health()
    await RedisClient.close()
    print_result(
        "Redis",
        healthy,
        "Connection successful" if healthy else "Unavailable (local locks will be used)",
    )
    return healthy


async def check_anthropic() -> bool:
    """Send a one-word prompt through the same client the bot uses."""
    from appointment_bot.infra.claude import ClaudeClient, ClaudeClientError

    try:
        client = ClaudeClient(max_retries=1)
        await client.generate(
            prompt="Responda apenas: ok",
            max_tokens=5,
            use_fallback_on_error=False,
        )
    except ClaudeClientError as e:
        print_result("Anthropic API", False, str(e)[:60])
        return False

    print_result("Anthropic API", True, "Key validated successfully")
    return True


async def check_calendar() -> bool:
    """Read the configured calendar's metadata with the bearer token."""
    import httpx
    from appointment_bot.config import get_settings

    s = get_settings()
    url = f"{s.google_calendar_base_url}/calendars/{s.google_calendar_id}"
    headers = {"Authorization": f"Bearer {s.google_calendar_access_token}"}

    try:
        async with httpx.AsyncClient(timeout=s.calendar_timeout_seconds) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as e:
        print_result("Google Calendar", False, f"Not reachable: {e}")
        return False

    if response.status_code == 200:
        summary = response.json().get("summary", s.google_calendar_id)
        print_result("Google Calendar", True, f"Access to '{summary}'")
        return True

    print_result("Google Calendar", False, f"Responded with {response.status_code}")
    return False


async def main() -> int:
    print("\n" + "="*60)
    print(" Appointment Bot - Setup Verification")
    print("="*60)

    critical_failed = False
    warnings = False

    print_header("Environment Variables")
    env = check_env_vars()

    print_header("Business Settings")
    show_business_settings()

    print_header("Service Connections")

    if not await check_postgres():
        critical_failed = True

    if not await check_redis():
        warnings = True

    if env.get("ANTHROPIC_API_KEY"):
        if not await check_anthropic():
            critical_failed = True
    else:
        print_result("Anthropic API", False, "Skipped - ANTHROPIC_API_KEY not set")
        critical_failed = True

    if env.get("GOOGLE_CALENDAR_ACCESS_TOKEN"):
        if not await check_calendar():
            warnings = True
    else:
        print(f"  {YELLOW}[SKIP]{RESET} Google Calendar - sync disabled")
        warnings = True

    print_header("Summary")

    if critical_failed:
        print(f"\n  {RED}CRITICAL: database or language model is not usable.{RESET}")
        print("  Fix the issues above before running the application.\n")
        return 1
    if warnings:
        print(f"\n  {YELLOW}WARNING: running with reduced functionality.{RESET}\n")
        return 0

    print(f"\n  {GREEN}All checks passed!{RESET}")
    print("  Start the application with:")
    print("    uvicorn appointment_bot.main:app --reload\n")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
