# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""ScriptFlow: userscript scheduling and execution pipeline."""

__version__ = "0.3.0"
