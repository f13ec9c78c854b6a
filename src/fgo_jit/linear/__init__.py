# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""Gaussian factor graphs, orderings and variable elimination."""
