# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framework Integrations - FastAPI plugin.
"""

from bkman.integrations.fastapi import (
    bkman_lifespan,
    register_bkman_routes,
    setup_bkman_plugin,
    verify_api_key,
)

__all__ = [
    "bkman_lifespan",
    "register_bkman_routes",
    "setup_bkman_plugin",
    "verify_api_key",
]
