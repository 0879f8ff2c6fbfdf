# apps/api_gateway/main.py
from __future__ import annotations

import logging

from apps.api_gateway.app_factory import create_app
from apps.common.pipeline_loader import get_coordinator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app(coordinator=get_coordinator())
