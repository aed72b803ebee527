"""Script execution sandbox for mesh configuration scripts.

Scripts run with restricted imports in a namespace pre-populated with the
mesh configuration functions bound to one SimulationSession:

    SetGridSize(128, 64, 1)
    SetCellSize(4e-9, 4e-9, 2e-9)
    SetPBC(2, 0, 0)
"""

import builtins
import sys
from pathlib import Path
from typing import Any

from fieldmesh.session import SimulationSession

ALLOWED_MODULES = frozenset({"fieldmesh", "numpy", "math", "pathlib"})


class RestrictedImportError(ImportError):
    """Raised when a disallowed module import is attempted."""

    pass


def script_functions(session: SimulationSession) -> dict[str, Any]:
    """Script-level names bound to ``session``.

    Returns:
        Mapping of SetGridSize, SetCellSize, SetPBC, SetMesh, SetGeom and
        Mesh to the corresponding session calls
    """
    return {
        "SetGridSize": session.set_grid_size,
        "SetCellSize": session.set_cell_size,
        "SetPBC": session.set_pbc,
        "SetMesh": session.set_mesh,
        "SetGeom": session.set_geom,
        "Mesh": session.current_mesh,
    }


def execute_mesh_script(
    script_path: Path, script_content: str, session: SimulationSession, verbose: bool = False
) -> dict[str, Any]:
    """Execute a mesh script against ``session`` in a controlled namespace.

    Only fieldmesh, numpy, math and pathlib may be imported. The import hook
    lives in a private copy of the builtins, so the interpreter's own
    ``__import__`` is never touched.

    Args:
        script_path: Path to the script file (for __file__ and relative imports)
        script_content: Content of the script to execute
        session: Session the script functions are bound to
        verbose: If True, print debug information

    Returns:
        Namespace dict containing all variables defined by the script

    Raises:
        RestrictedImportError: If script attempts to import disallowed module
        SyntaxError: If script has syntax errors
        Exception: Any exception raised by the script during execution
    """
    original_import = builtins.__import__

    def restricted_import(name, globals=None, locals=None, fromlist=(), level=0):
        top_level = name.split(".")[0]
        if level == 0 and top_level not in ALLOWED_MODULES:
            raise RestrictedImportError(
                f"Import of '{name}' is not allowed in mesh scripts. "
                f"Allowed modules: {', '.join(sorted(ALLOWED_MODULES))}"
            )
        return original_import(name, globals, locals, fromlist, level)

    script_builtins = dict(vars(builtins))
    script_builtins["__import__"] = restricted_import

    namespace: dict[str, Any] = {
        "__name__": "__main__",
        "__file__": str(script_path),
        "__builtins__": script_builtins,
    }
    namespace.update(script_functions(session))

    script_dir = str(script_path.parent)
    sys.path.insert(0, script_dir)
    try:
        if verbose:
            print(f"Executing script: {script_path}")

        exec(compile(script_content, str(script_path), "exec"), namespace)

        if verbose:
            defined_vars = [k for k in namespace if not k.startswith("__")]
            print(f"Script defined variables: {', '.join(defined_vars)}")
    finally:
        if script_dir in sys.path:
            sys.path.remove(script_dir)

    return namespace


def validate_mesh_configured(session: SimulationSession):
    """Check that the script left the session with a complete mesh.

    Returns:
        The session's current Mesh

    Raises:
        ValueError: If grid size or cell size was never set
    """
    if not session.registry.is_configured:
        pending = session.registry.pending
        missing = [
            name
            for name, value in (("SetGridSize", pending.grid_size), ("SetCellSize", pending.cell_size))
            if value is None
        ]
        raise ValueError(
            f"Script did not configure a mesh (missing: {', '.join(missing)}). "
            "Example: SetMesh(64, 64, 1, 4e-9, 4e-9, 2e-9)"
        )
    return session.mesh
