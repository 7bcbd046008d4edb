"""Formal pipeline invariants.

This file documents what each stage MUST produce. This is architecture, not code.
Use this file as a reviewer anchor and system reference.
"""

PIPELINE_INVARIANTS = {
    "manifest": [
        "Every slice id is unique",
        "Every source path is absolute and exists at read time",
        "write then read yields the same slices in the same order",
    ],

    "graph": [
        "One CSR row per slice in manifest order",
        "No self-edges; no isolated node when there are 2+ slices",
        "Each row's neighbors are ordered by (z, id)",
    ],

    "pairwise": [
        "Every adjacency entry has a matrix file and a metric file",
        "Edge weights are finite and non-negative",
        "Weight = (1 - metric) * (1 + z_epsilon) ** |dz|",
    ],

    "router": [
        "Root minimizes the summed shortest-path distance (lowest index on ties)",
        "Every slice is reachable from the root",
    ],

    "chain": [
        "One accumulated 3x3 matrix per slice; identity for the root",
        "Every slice has a reslice in padded-root space (unless reslicing is disabled)",
    ],

    "volmatch": [
        "One volume cross-section and one initial matrix per slice",
        "Median matrix is the L1 medoid of the initial matrices",
        "Iteration 0 matrix = accumulated matrix @ median matrix",
    ],

    "voliter": [
        "Iterations 1..n_affine write matrices; later iterations write warps",
        "A result file for (slice, iteration) is written once and never modified",
        "Each processed (slice, iteration) has a metric dump",
    ],
}

# Which stages are optional vs required
STAGE_REQUIREMENTS = {
    "manifest": "REQUIRED",
    "graph": "REQUIRED",
    "pairwise": "REQUIRED",
    "router": "REQUIRED",
    "chain": "REQUIRED",
    "volmatch": "REQUIRED",
    "voliter": "REQUIRED",
    "plots": "OPTIONAL",
}
