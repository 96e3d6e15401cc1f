"""
Discretization Engine
=====================
Turns a validated GeometryModel into a conforming MeshModel.

1. Ordering: vertices, then edges, faces and solids, so every entity reuses
   the nodes of its boundary.
2. Concurrency: faces and solids are meshed on a thread pool; node creation
   goes through one synchronized index.
"""
