# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""Manifold variable types and generic measurement factors."""
