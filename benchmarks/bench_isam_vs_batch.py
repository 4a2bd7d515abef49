# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.

import math
import time

from isam_jit.core.types import POINT2, POSE2
from isam_jit.core.values import Values
from isam_jit.optimization.isam import ISAM2, ISAM2Params
from isam_jit.optimization.solvers import batch_delta
from isam_jit.slam.planar import PlanarGraph

ODO_SIGMAS = [0.1, 0.1, 0.02]
BR_SIGMAS = [0.02, 0.1]


def build_square_walk(num_poses: int = 60):
    """
    A robot driving around a 10m square (1m steps, 90° turns at the corners),
    sighting the four corner landmarks whenever they are within 6m.
    Returns one (new_factors, new_values) pair per time step.
    """
    landmarks = {1000 + i: p for i, p in enumerate([(-2.0, -2.0), (12.0, -2.0), (12.0, 12.0), (-2.0, 12.0)])}
    seen = set()
    steps = []

    x, y, th = 0.0, 0.0, 0.0
    for i in range(num_poses):
        graph = PlanarGraph()
        values = Values()
        if i == 0:
            graph.add_pose_prior(0, [0.0, 0.0, 0.0], ODO_SIGMAS)
        else:
            turn = math.pi / 2 if i % 10 == 0 else 0.0
            graph.add_relative_pose(i - 1, i, [1.0, 0.0, turn], ODO_SIGMAS)
            th += turn
            x += math.cos(th - turn)
            y += math.sin(th - turn)
        # Initial guesses drift slowly, like dead reckoning would
        values.insert(i, [x + 0.02 * i, y - 0.01 * i, th + 0.005 * i], POSE2)

        for key, (lx, ly) in landmarks.items():
            dx, dy = lx - x, ly - y
            rng = math.hypot(dx, dy)
            if rng > 6.0:
                continue
            bearing = math.atan2(dy, dx) - th
            graph.add_bearing_range(i, key, bearing, rng, BR_SIGMAS)
            if key not in seen:
                seen.add(key)
                values.insert(key, [lx + 0.3, ly - 0.3], POINT2)
        steps.append((graph, values))
    return steps


def run_benchmark(num_poses: int = 60):
    print("=== ISAM2 vs batch re-solve (planar square walk) ===")
    print(f"num_poses = {num_poses}")

    steps = build_square_walk(num_poses)
    isam = ISAM2(ISAM2Params(relinearize_threshold=0.05, relinearize_skip=1))
    full_graph = PlanarGraph()
    full_values = Values()

    # Warmup: compile the linearizers of every factor type
    warm = ISAM2()
    for graph, values in steps[:12]:
        warm.update(graph, values)

    t_isam = 0.0
    t_batch = 0.0
    reeliminated = 0
    for graph, values in steps:
        t0 = time.time()
        result = isam.update(graph, values)
        t_isam += time.time() - t0
        reeliminated += result.variables_reeliminated

        for factor in graph:
            full_graph.push_back(factor)
        full_values.insert_values(values)
        t0 = time.time()
        batch_delta(full_graph, full_values)
        t_batch += time.time() - t0

    print(f"ISAM2 updates: {t_isam * 1000:.1f} ms total, {t_isam * 1000 / num_poses:.2f} ms / step")
    print(f"batch solves:  {t_batch * 1000:.1f} ms total, {t_batch * 1000 / num_poses:.2f} ms / step")
    print(f"variables re-eliminated per step: {reeliminated / num_poses:.1f} of {len(full_values)}")

    estimate = isam.calculate_estimate()
    last = num_poses - 1
    print(f"pose0 (est):   {estimate.as_tuple(0)}")
    print(f"pose{last} (est): {estimate.as_tuple(last)}")


if __name__ == "__main__":
    run_benchmark(num_poses=60)
