# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""Gauss-Newton and Levenberg-Marquardt optimizers and their parameters."""
