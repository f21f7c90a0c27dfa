# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/devhost/observers/interface.py

from __future__ import annotations

from typing import Protocol

from .events import BaseEvent


class Observer(Protocol):
    """Anything the EventBus can deliver setup and service events to."""

    def notify(self, event: BaseEvent) -> None: ...
