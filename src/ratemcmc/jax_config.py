"""
JAX Configuration - MUST be imported before any JAX imports.

This module sets environment variables for JAX configuration including:
- Double precision (the pruning likelihood and covariance algebra need float64)
- Persistent compilation cache directory
- Minimum compile time threshold for caching
"""
import os
from pathlib import Path

# --- PRECISION ---
os.environ.setdefault("JAX_ENABLE_X64", "True")

# Suppress CUDA/XLA C++ warnings (GPU interconnect, NUMA, cuDNN factories)
os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "2")

# --- PERSISTENT COMPILATION CACHE ---
# Enables cross-session caching of the compiled likelihood kernel
_JAX_CACHE_DIR = Path.home() / ".cache" / "jax" / "ratemcmc_cache"
_JAX_CACHE_DIR.mkdir(parents=True, exist_ok=True)
os.environ.setdefault("JAX_COMPILATION_CACHE_DIR", str(_JAX_CACHE_DIR))
os.environ.setdefault("JAX_PERSISTENT_CACHE_MIN_COMPILE_TIME_SECS", "1.0")
