"""
Capacitor configuration for the Android and iOS shells.

The native apps are thin wrappers that load the hosted web app, so the config
is pure data. ``flask export-mobile-config`` writes it to
``capacitor.config.json`` for the Capacitor CLI.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

APP_ID = "com.bestmealmate.app"
APP_NAME = "BestMealMate"
DEFAULT_SERVER_URL = "https://www.bestmealmate.com"
BRAND_COLOR = "#10B981"
SPLASH_DURATION_MS = 2000


def build_capacitor_config(server_url: str = "") -> Dict[str, Any]:
  return {
    "appId": APP_ID,
    "appName": APP_NAME,
    "webDir": "out",
    "server": {
      "url": server_url or DEFAULT_SERVER_URL,
      "cleartext": False,
    },
    "android": {
      "allowMixedContent": False,
      "backgroundColor": BRAND_COLOR,
      "buildOptions": {
        "releaseType": "AAB",
      },
    },
    "ios": {
      "backgroundColor": BRAND_COLOR,
      "contentInset": "automatic",
      "preferredContentMode": "mobile",
      "scheme": APP_NAME,
    },
    "plugins": {
      "SplashScreen": {
        "launchShowDuration": SPLASH_DURATION_MS,
        "backgroundColor": BRAND_COLOR,
        "showSpinner": False,
        "launchAutoHide": True,
        "splashImmersive": True,
      },
      "Keyboard": {
        "resize": "body",
        "resizeOnFullScreen": True,
      },
    },
  }


def write_capacitor_config(path: Path, config: Dict[str, Any]) -> Path:
  """Write ``config`` as pretty-printed JSON and return the path written."""
  path.parent.mkdir(parents=True, exist_ok=True)
  with open(path, "w", encoding="utf-8") as destination:
    json.dump(config, destination, indent=2)
    destination.write("\n")
  return path


__all__ = ["build_capacitor_config", "write_capacitor_config"]
