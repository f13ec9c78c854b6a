# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.

import time

import jax.numpy as jnp

from fgo_jit.core.factor_graph import FactorGraph
from fgo_jit.core.noise_model import Diagonal
from fgo_jit.core.types import symbol
from fgo_jit.core.values import Values
from fgo_jit.optimization.params import LevenbergMarquardtParams
from fgo_jit.optimization.solvers import LevenbergMarquardtOptimizer
from fgo_jit.slam.manifold import Pose2
from fgo_jit.slam.measurements import BetweenFactor, PriorFactor


def build_pose2_loop_graph(num_poses: int = 100, loop_every: int = 10):
    """
    Pose2 odometry chain driving around a circle:
        x0 --odom--> x1 --odom--> ... --odom--> x_{N-1}
    Prior on x0, a loop closure from x_i back to x_{i - loop_every} every
    ``loop_every`` poses. Initial guesses are perturbed around ground truth.
    """
    step = Pose2(1.0, 0.0, 2.0 * jnp.pi / num_poses)
    truth = [Pose2.identity()]
    for _ in range(num_poses - 1):
        truth.append(truth[-1].compose(step))

    keys = [symbol("x", i) for i in range(num_poses)]
    odo = Diagonal.from_sigmas([0.1, 0.1, 0.05])

    graph = FactorGraph()
    graph.add_factor(PriorFactor(keys[0], truth[0], Diagonal.from_sigmas([1e-3, 1e-3, 1e-3])))
    for i in range(num_poses - 1):
        graph.add_factor(BetweenFactor(keys[i], keys[i + 1], step, odo))
    for i in range(loop_every, num_poses, loop_every):
        j = i - loop_every
        graph.add_factor(BetweenFactor(keys[j], keys[i], truth[j].between(truth[i]), odo))

    values = Values()
    for i, p in enumerate(truth):
        values.insert(
            keys[i],
            p.retract(jnp.array([0.1 * jnp.sin(0.3 * i), 0.05 * jnp.cos(0.2 * i), 0.02 * jnp.sin(i)])),
        )
    return graph, values


def run_benchmark(num_poses: int = 100, max_iterations: int = 10, max_workers=None):
    print("=== Pose2 Levenberg-Marquardt Elimination Benchmark ===")
    print(f"num_poses = {num_poses}, max_iterations = {max_iterations}, max_workers = {max_workers}")

    graph, values = build_pose2_loop_graph(num_poses)

    for elimination in ("SEQUENTIAL", "MULTIFRONTAL"):
        params = LevenbergMarquardtParams(
            max_iterations=max_iterations,
            elimination=elimination,
            max_workers=max_workers,
        )
        optimizer = LevenbergMarquardtOptimizer(graph, values, params=params)

        # Warmup: first linearization traces every factor type once.
        optimizer.iterate()

        t0 = time.time()
        state = optimizer.run()
        t1 = time.time()

        elapsed = t1 - t0
        print(f"[{elimination}] {state.status.value} after {state.iteration} iterations")
        print(f"[{elimination}] Elapsed time: {elapsed * 1000:.3f} ms, final error {state.error:.6g}")


if __name__ == "__main__":
    run_benchmark(num_poses=100, max_iterations=10, max_workers=4)
