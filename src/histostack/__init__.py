"""`histostack` - Histology stack reconstruction and MRI volume alignment.

Subpackages:
- project: Manifest, file layout, checkpoint store, image I/O
- core: Bounded image cache
- engine: Registration engine contract and the greedy binding
- reconstruction: Neighbor graph, pairwise edges, transform chains
- volume: Volume matching and iterative refinement
- pipeline: Stage orchestrator and registration ledger
- visualization: QC plotting
"""

__version__ = "0.1.0"
