# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Infrastructure layer for the analytics client.

This package contains:
- Local database handle and table definitions (SQLite via aiosqlite)
"""
