"""
Environment configuration.

Paths and solver defaults are read from the environment, optionally via a
`.env` file in the working directory.
"""
import os

import torch
from dotenv import load_dotenv

load_dotenv()

# Intermediate results we do not wish to version
LOG_DIR = os.getenv("LOG_DIR", "_logs")
# Outputs we wish to keep
OUTPUT_DIR = os.getenv("OUTPUT_DIR", "outputs")
# Figures we wish to keep
FIG_DIR = os.getenv("FIG_DIR", "fig")

# Solver budget per update step
ITERATIONS = int(os.getenv("BAYES_MP_ITERATIONS", "10"))
TOLERANCE = float(os.getenv("BAYES_MP_TOLERANCE", "1e-6"))

DTYPE = os.getenv("BAYES_MP_DTYPE", "float64")


def get_dtype(name=None):
    """
    torch dtype from a name such as "float64".
    """
    if name is None:
        name = DTYPE
    dtype = getattr(torch, name, None)
    if not isinstance(dtype, torch.dtype):
        raise ValueError(f"unknown dtype {name!r}")
    return dtype


def use_default_dtype(name=None):
    """
    Experiments run in double precision unless told otherwise.
    """
    torch.set_default_dtype(get_dtype(name))
