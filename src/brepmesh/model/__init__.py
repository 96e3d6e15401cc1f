"""
The MODEL layer contains pure data structures for the input side:
B-rep geometry, its validation, and the properties attached to it.
It has NO knowledge of meshing.
"""
