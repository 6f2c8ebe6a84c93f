# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Domain services layer for the Heroes in Waiting client.

Domains:
    analytics: Offline-first event recording, batching and sync.
"""
