"""
Example: Thin Film Mesh
=======================
A 512 nm × 256 nm × 4 nm film with a circular hole, periodic along x.
Run it with the fieldmesh-run command:

    fieldmesh-run examples/thin_film.py --device cpu

Grid: 128 × 64 × 2 cells @ 4 nm × 4 nm × 2 nm
PBC: 4 repetitions along x
"""

import numpy as np

# Grid and cell size can be given in either order; the mesh is applied
# once both are known
SetCellSize(4, 4, 2, units="nm")
SetGridSize(128, 64, 2)
SetPBC(4, 0, 0)

hole_radius = 40e-9


def film_with_hole(x, y, z):
    return np.hypot(x, y) > hole_radius


SetGeom(film_with_hole)

mesh = Mesh()
