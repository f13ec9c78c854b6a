# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""Core data model: keys, values, noise models, factors and the factor graph."""
