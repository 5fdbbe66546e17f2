# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""CLI command groups."""
