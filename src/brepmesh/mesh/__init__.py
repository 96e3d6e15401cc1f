"""
The MESH layer holds the immutable output of a discretization run.
It has NO knowledge of how the mesh was produced; it deals with nodes,
elements and the associativity back to geometry.
"""
