from __future__ import annotations

SERVICE_NAME = "medialink-cloud"
APP_TITLE = "MediaLink Cloud"
APP_VERSION = "0.4.0"
