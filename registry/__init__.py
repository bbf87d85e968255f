# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""Promise registry server: store, lifecycle, moderation, events and HTTP API."""
