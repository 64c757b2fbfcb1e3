#!/usr/bin/env python3
"""Seed the onboarding email templates and the welcome automation into the outbound store."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from foodshare_outbound.config import get_settings
from foodshare_outbound.repository import (
    AutomationRecord,
    AutomationStep,
    EmailTemplateRecord,
    create_outbound_repository,
)

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------
AUTOMATION_ID_DEFAULT = "welcome-series"
AUTOMATION_NAME = "Welcome Series + Tester Recruitment"
BRAND_GRADIENT = "linear-gradient(135deg, #ff2d55 0%, #ff5177 100%)"

# (template id, name, subject, headline, body, minutes after enrollment)
WELCOME_SERIES = (
    (
        "welcome",
        "Welcome Email",
        "Welcome to FoodShare! 🍎",
        "Welcome to FoodShare! 🎉",
        "Welcome to FoodShare! You're now part of a community dedicated to reducing food waste.",
        0,
    ),
    (
        "complete-profile",
        "Complete Profile Reminder",
        "Complete your FoodShare profile 📝",
        "Complete Your Profile",
        "A complete profile helps you connect with your local food sharing community.",
        2 * 24 * 60,
    ),
    (
        "tester-recruitment",
        "Beta Tester Recruitment",
        "Help Shape FoodShare's Future - Join Our Beta Program 🚀",
        "Join Our Beta Program",
        "We need passionate testers like you! Try new Web and iOS features before release.",
        4 * 24 * 60,
    ),
    (
        "first-share-tips",
        "First Share Tips",
        "Ready to share your first food? 🥗",
        "Share Your First Item",
        "Snap a photo, add a pickup window and your neighbors will take it from there.",
        7 * 24 * 60,
    ),
    (
        "community-highlights",
        "Community Highlights",
        "See what your neighbors are sharing 🏘️",
        "Your Community Is Thriving",
        "Your local FoodShare community is thriving. See what was shared nearby this week.",
        12 * 24 * 60,
    ),
)


def render_html(headline: str, body: str) -> str:
    return (
        '<table width="100%" cellpadding="0" cellspacing="0">'
        f'<tr><td style="background: {BRAND_GRADIENT}; padding: 40px 30px; text-align: center;">'
        f'<h1 style="margin: 0; color: #ffffff;">{headline}</h1></td></tr>'
        '<tr><td style="padding: 40px 30px;">'
        "<p>Hi {{first_name}},</p>"
        f"<p>{body}</p>"
        '<p><a href="{{unsubscribe_url}}">Unsubscribe</a></p>'
        "</td></tr></table>"
    )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed welcome series templates and automation.")
    parser.add_argument("--automation-id", default=AUTOMATION_ID_DEFAULT)
    parser.add_argument("--inactive", action="store_true", help="Create the automation disabled")
    return parser.parse_args()


async def seed(automation_id: str, *, active: bool) -> None:
    settings = get_settings()
    repository = create_outbound_repository(
        backend=settings.outbound_store_backend,
        database_url=settings.database_url,
    )

    steps: list[AutomationStep] = []
    for template_id, name, subject, headline, body, delay_minutes in WELCOME_SERIES:
        await repository.save_email_template(
            EmailTemplateRecord(
                id=template_id,
                name=name,
                subject=subject,
                html_content=render_html(headline, body),
                text_content=body,
            )
        )
        print(f"   ✓ Template: {template_id}")
        steps.append(AutomationStep(delay_minutes=delay_minutes, template_id=template_id, subject=subject))

    await repository.save_automation(
        AutomationRecord(id=automation_id, name=AUTOMATION_NAME, steps=tuple(steps), is_active=active)
    )
    print(f"\nAutomation {automation_id!r} saved with {len(steps)} steps (active={active})")
    if settings.outbound_store_backend == "inmemory":
        print("Note: OUTBOUND_STORE_BACKEND=inmemory, nothing was persisted.")


def main() -> None:
    args = parse_args()
    asyncio.run(seed(args.automation_id, active=not args.inactive))


if __name__ == "__main__":
    main()
