"""
Read-only facade handed to solvers: mesh, resolved properties, reverse
lookup and the serialized artifact.
"""
