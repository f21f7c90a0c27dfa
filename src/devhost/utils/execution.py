# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from dataclasses import dataclass

@dataclass(frozen=True)
class ExecutionContext:
    """
    controls how commands are executed

    dry_run: mutating commands are logged and reported as successful
    without touching the host. Read-only detection commands still run.
    """

    dry_run: bool = False
