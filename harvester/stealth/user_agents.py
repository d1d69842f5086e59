"""
User-Agent Rotator Module

Picks a desktop Chromium fingerprint for each browser session so that the
User-Agent, Client Hints and viewport stay consistent within a context.
Only Chromium-family agents are listed since sessions run on Chromium.
"""

import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class BrowserProfile:
    """A desktop browser fingerprint for one session."""

    user_agent: str
    sec_ch_ua: str
    platform: str
    viewport_width: int = 1920
    viewport_height: int = 1080
    locale: str = "en-US"
    timezone_id: str = "America/New_York"


BROWSER_PROFILES = [
    BrowserProfile(
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        sec_ch_ua='"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"',
        platform='"Windows"',
    ),
    BrowserProfile(
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36",
        sec_ch_ua='"Not_A Brand";v="8", "Chromium";v="119", "Google Chrome";v="119"',
        platform='"Windows"',
        viewport_width=1536,
        viewport_height=864,
    ),
    BrowserProfile(
        user_agent="Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        sec_ch_ua='"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"',
        platform='"macOS"',
        viewport_width=1440,
        viewport_height=900,
        timezone_id="America/Los_Angeles",
    ),
    BrowserProfile(
        user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.0.0",
        sec_ch_ua='"Not_A Brand";v="8", "Chromium";v="120", "Microsoft Edge";v="120"',
        platform='"Windows"',
        timezone_id="America/Chicago",
    ),
    BrowserProfile(
        user_agent="Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        sec_ch_ua='"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"',
        platform='"Linux"',
        viewport_width=1366,
        viewport_height=768,
        timezone_id="America/Denver",
    ),
]


class UserAgentRotator:
    """
    Hands out browser fingerprints for new sessions.

    Example:
        rotator = UserAgentRotator()
        context = await browser.new_context(**rotator.get_context_options())
    """

    def __init__(self, profiles: Optional[List[BrowserProfile]] = None):
        self._profiles = list(profiles) if profiles else list(BROWSER_PROFILES)

    def get_random_profile(self) -> BrowserProfile:
        return random.choice(self._profiles)

    def get_context_options(self, profile: Optional[BrowserProfile] = None) -> Dict[str, Any]:
        """
        Playwright new_context() keyword arguments for a profile.

        Args:
            profile: Profile to use (random if None)

        Returns:
            Dict of context options with matching extra headers
        """
        profile = profile or self.get_random_profile()
        return {
            "user_agent": profile.user_agent,
            "viewport": {"width": profile.viewport_width, "height": profile.viewport_height},
            "locale": profile.locale,
            "timezone_id": profile.timezone_id,
            "extra_http_headers": {
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
                "Accept-Language": f"{profile.locale},{profile.locale.split('-')[0]};q=0.9",
                "Upgrade-Insecure-Requests": "1",
                "Sec-Ch-Ua": profile.sec_ch_ua,
                "Sec-Ch-Ua-Mobile": "?0",
                "Sec-Ch-Ua-Platform": profile.platform,
            },
        }

    @property
    def profile_count(self) -> int:
        return len(self._profiles)
