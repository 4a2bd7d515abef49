from __future__ import annotations

from isam_jit.core.types import POSE2
from isam_jit.core.values import Values
from isam_jit.optimization.isam import ISAM2, ISAM2Params
from isam_jit.optimization.solvers import GaussNewtonParams, gauss_newton
from isam_jit.slam.planar import PlanarGraph

ODOM_SIGMAS = [0.2, 0.2, 0.1]
GPS_SIGMAS = [0.1, 0.1]


def build_problem():
    """Three poses driving 2m along x, each with a GPS-like position fix."""
    graph = PlanarGraph()
    graph.add_relative_pose(1, 2, [2.0, 0.0, 0.0], ODOM_SIGMAS)
    graph.add_relative_pose(2, 3, [2.0, 0.0, 0.0], ODOM_SIGMAS)
    graph.add_position_prior(1, [0.0, 0.0], GPS_SIGMAS)
    graph.add_position_prior(2, [2.0, 0.0], GPS_SIGMAS)
    graph.add_position_prior(3, [4.0, 0.0], GPS_SIGMAS)

    initial = Values()
    initial.insert(1, [0.5, 0.0, 0.2], POSE2)
    initial.insert(2, [2.3, 0.1, -0.2], POSE2)
    initial.insert(3, [4.1, 0.1, 0.1], POSE2)
    return graph, initial


def run_experiment():
    graph, initial = build_problem()

    print("\n=== INITIAL ESTIMATE ===")
    for key in initial:
        print(f"x{key}: {initial.as_tuple(key)}")

    # Batch reference
    batch = gauss_newton(graph, initial)
    print("\n=== BATCH GAUSS-NEWTON ===")
    for key in batch:
        print(f"x{key}: {batch.as_tuple(key)}")

    # Incremental: one update with everything, then relinearize until stable
    isam = ISAM2(ISAM2Params(optimization_params=GaussNewtonParams(0.0), relinearize_threshold=1e-6, relinearize_skip=1))
    result = isam.update(graph, initial)
    print(f"\nfirst update re-eliminated {result.variables_reeliminated} variables")
    for _ in range(5):
        isam.update()

    estimate = isam.calculate_estimate()
    print("\n=== ISAM2 ESTIMATE ===")
    for key in estimate:
        print(f"x{key}: {estimate.as_tuple(key)}")


if __name__ == "__main__":
    run_experiment()
