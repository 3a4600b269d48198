from .mesh import Mesh, read_mesh
from .regions import RegionEntities, RegionModel
__all__ = ['Mesh', 'read_mesh', 'RegionEntities', 'RegionModel']
