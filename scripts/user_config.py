"""histostack User Configuration.

This is the user-facing configuration file. Modify settings here to customize
the pipeline behavior. Advanced settings are in src/histostack/schemas/param.py

Usage:
    histostack --config scripts/user_config.py init -M slices.txt /data/brain01
    histostack --config scripts/user_config.py recon /data/brain01
    histostack --config scripts/user_config.py -N voliter -R 1 5 /data/brain01
"""

CONFIG = {
    # ========================================================================
    # PROJECT
    # ========================================================================
    "IMAGE_EXT": "nii.gz",    # Extension for images written to the project
    "REUSE": False,           # Trust existing results (same as -N)

    # ========================================================================
    # IMAGE CACHE
    # ========================================================================
    "CACHE_MAX_ITEMS": 20,    # Slides kept in memory (0 = no limit)
    "CACHE_MAX_BYTES": 0,     # Memory budget in bytes (0 = no limit)

    # ========================================================================
    # RECONSTRUCTION
    # ========================================================================
    "Z_RANGE": 0.0,           # Neighbor threshold; 0 = nearest neighbor each way
    "Z_EPSILON": 0.1,         # Edge weight penalty per unit of z distance

    # ========================================================================
    # VOLUME REFINEMENT
    # ========================================================================
    "VOLUME_SAMPLING": "linear",
    "N_AFFINE": 5,
    "N_DEFORM": 5,
    "W_VOLUME": 4.0,          # Volume term weight; each neighbor weighs 1
    "SEED": None,             # Slice visiting order; None = random, logged

    # ========================================================================
    # REGISTRATION ENGINE
    # ========================================================================
    "METRIC": "NCC",
    "ITERATIONS": "100x50x10",
    "THREADS": None,

    "LOG_LEVEL": "INFO",
    "PLOTS": True,
}
