"""
brepmesh
========
Bridge from a boundary-representation model to a conforming finite element
mesh that remembers which geometric entity every node and element came from.

Layers:
    model       geometry ingestion, topology and properties
    mesh        immutable mesh and associativity
    controller  the discretization run
    export      query facade and solver artifact
"""
