# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_free_fleet

import os
import sys

from loguru import logger

__all__ = ["logger"]

LOG_LEVEL = os.environ.get("FREE_FLEET_LOG_LEVEL", "INFO")
LOG_FILE = os.environ.get("FREE_FLEET_LOG_FILE")

logger.remove()

logger.add(
    sys.stderr,
    level=LOG_LEVEL,
    format=(
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    ),
)

if LOG_FILE:
    logger.add(
        LOG_FILE,
        level=LOG_LEVEL,
        rotation="10 MB",
        retention="7 days",
        serialize=True,
        enqueue=True,
    )
