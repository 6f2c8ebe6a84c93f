"""Heroes in Waiting analytics client.

Offline-first recording, COPPA redaction and batched delivery of
classroom analytics events.

Copyright (C) 2025 Global Digital Labs (gdlabs.io)
SPDX-License-Identifier: LGPL-3.0-or-later
"""

__version__ = "1.0.0"
