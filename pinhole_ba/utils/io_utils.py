"""
I/O utilities for saving bundle adjustment runs in JSON format
"""

import json
import logging
import numpy as np
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Union

logger = logging.getLogger(__name__)


def convert_to_json_serializable(obj):
    """Convert numpy arrays and scalars to plain Python types for JSON serialization

    Non-finite floats become None so the output stays strict JSON.
    """
    if isinstance(obj, np.ndarray):
        return convert_to_json_serializable(obj.tolist())
    elif isinstance(obj, dict):
        return {str(k): convert_to_json_serializable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [convert_to_json_serializable(item) for item in obj]
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, (float, np.floating)):
        return float(obj) if np.isfinite(obj) else None
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


def save_solver_report(summary, filepath: Union[str, Path]) -> Path:
    """Save a SolverSummary (and its iteration trace) as JSON"""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    with open(filepath, 'w') as f:
        json.dump(convert_to_json_serializable(summary.to_dict()), f, indent=2, allow_nan=False)

    logger.info(f"Solver report saved to {filepath}")
    return filepath


def reconstruction_to_dict(problem) -> Dict[str, Any]:
    """Camera and point blocks of a problem, keyed by index"""
    cameras = {}
    for i, camera in enumerate(problem.camera_parameters):
        cameras[i] = {
            'angle_axis': camera[0:3],
            'translation': camera[3:6],
            'focal': camera[6],
        }

    return {
        'num_cameras': problem.num_cameras,
        'num_points': problem.num_points,
        'num_observations': problem.num_observations,
        'cameras': cameras,
        'points3d': {j: point for j, point in enumerate(problem.point_parameters)},
    }


def save_reconstruction(problem, filepath: Union[str, Path]) -> Path:
    """Save the current camera and point parameters of a problem as JSON"""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    with open(filepath, 'w') as f:
        json.dump(convert_to_json_serializable(reconstruction_to_dict(problem)), f, indent=2, allow_nan=False)

    logger.info(f"Reconstruction saved to {filepath}")
    return filepath


def load_reconstruction(filepath: Union[str, Path]) -> Dict[str, np.ndarray]:
    """Load cameras (C, 7) and points (P, 3) written by ``save_reconstruction``"""
    with open(filepath, 'r') as f:
        info = json.load(f)

    cameras = np.array([
        list(c['angle_axis']) + list(c['translation']) + [c['focal']]
        for _, c in sorted(info['cameras'].items(), key=lambda kv: int(kv[0]))
    ], dtype=np.float64).reshape(-1, 7)
    points = np.array([
        p for _, p in sorted(info['points3d'].items(), key=lambda kv: int(kv[0]))
    ], dtype=np.float64).reshape(-1, 3)

    return {'cameras': cameras, 'points': points}
