# src/pg_engine/architecture.py
"""Host/accelerator architecture selection and value conversion.

The engine runs every heavy linear-algebra call either on the host
(NumPy/SciPy) or on an accelerator (CuPy/cupyx). The choice is a tagged
variant, :class:`Architecture`, carrying its capabilities, and is threaded
explicitly through component constructors inside an
:class:`ArchitectureAdapter`.

Design notes:
    * Selection is made once. An adapter may be re-targeted with
      :meth:`ArchitectureAdapter.select` only until the first Operator or
      SolverState is built on it (which calls :meth:`ArchitectureAdapter.bind`).
      After that, re-targeting raises ConfigurationError; switching backends
      means rebuilding every Operator and SolverState on a fresh adapter.
    * Round trip: host -> accelerator -> host reproduces dense vectors exactly
      and sparse matrices structurally with identical entries (both directions
      copy the CSR arrays verbatim).
    * CuPy is an optional dependency; it is imported lazily and only when the
      accelerator is requested.
"""

from __future__ import annotations

from enum import Enum
from types import ModuleType
from typing import TYPE_CHECKING, Any, cast

import numpy as np
import scipy.sparse
import scipy.sparse.linalg
from scipy.sparse import csr_matrix, issparse

from .errors import ConfigurationError, require_cupy

if TYPE_CHECKING:
    from numpy.typing import NDArray


_UNKNOWN_ARCH_ERROR = "Unknown architecture: {arch!r}; expected 'host' or 'accelerator'"
_BOUND_ERROR = (
    "Architecture is already bound to '{current}'; it cannot be changed to "
    "'{requested}' after operators or solver states were constructed."
)
_UNSUPPORTED_VALUE_ERROR = (
    "Cannot convert value of type {typ}; expected a dense vector or sparse matrix."
)
_ARCH_MISMATCH_ERROR = (
    "{name} lives on '{got}' but the adapter is bound to '{expected}'."
)

_DEVICE_MODULES = frozenset({"cupy", "cupyx"})


class Architecture(str, Enum):
    """Execution target for vectors, matrices and Krylov solves."""

    HOST = "host"
    ACCELERATOR = "accelerator"

    @property
    def is_device(self) -> bool:
        """True when values live in accelerator memory."""
        return self is Architecture.ACCELERATOR

    @property
    def supports_factorization(self) -> bool:
        """True when (incomplete) LU preconditioners are available.

        The device sparse library used here provides no sparse LU/ILU that can
        be applied as a preconditioner, so factorizations are host-only.
        """
        return self is Architecture.HOST

    @classmethod
    def parse(cls, value: str | Architecture) -> Architecture:
        """Normalize a user-provided architecture name.

        Args:
            value: Architecture or name ("host"/"cpu", "accelerator"/"gpu").

        Raises:
            ConfigurationError: If the name is unknown.

        Returns:
            Architecture member.
        """
        if isinstance(value, Architecture):
            return value
        name = str(value).strip().lower()
        aliases = {"cpu": "host", "gpu": "accelerator", "device": "accelerator"}
        name = aliases.get(name, name)
        try:
            return cls(name)
        except ValueError as exc:
            raise ConfigurationError(_UNKNOWN_ARCH_ERROR.format(arch=value)) from exc


def _is_device_value(value: object) -> bool:
    root = type(value).__module__.split(".", 1)[0]
    return root in _DEVICE_MODULES


def _cupy_modules() -> tuple[ModuleType, ModuleType, ModuleType]:
    """Import cupy, cupyx.scipy.sparse and cupyx.scipy.sparse.linalg.

    Returns:
        Tuple of (cupy, cupyx.scipy.sparse, cupyx.scipy.sparse.linalg).
    """
    require_cupy()

    import cupy  # noqa: PLC0415
    import cupyx.scipy.sparse as cupy_sparse  # noqa: PLC0415
    import cupyx.scipy.sparse.linalg as cupy_linalg  # noqa: PLC0415

    return cupy, cupy_sparse, cupy_linalg


def architecture_of(value: object) -> Architecture:
    """Return the architecture a value currently lives on."""
    return Architecture.ACCELERATOR if _is_device_value(value) else Architecture.HOST


def convert(value: Any, target: Architecture) -> Any:
    """Convert a dense vector or sparse matrix to the target architecture.

    Dense values keep their dtype. Sparse values always come back as CSR.

    Args:
        value: NumPy/CuPy array or SciPy/cupyx sparse matrix.
        target: Target architecture.

    Raises:
        TypeError: If value is neither array-like nor sparse.

    Returns:
        The value on the target architecture.
    """
    on_device = _is_device_value(value)

    if target is Architecture.HOST:
        if on_device:
            host = value.get()
            return host.tocsr() if issparse(host) else np.asarray(host)
        if issparse(value):
            return cast("csr_matrix", value.tocsr())
        if isinstance(value, np.ndarray | list | tuple | float | int):
            return np.asarray(value)
        raise TypeError(_UNSUPPORTED_VALUE_ERROR.format(typ=type(value)))

    cupy, cupy_sparse, _ = _cupy_modules()
    if on_device:
        if cupy_sparse.issparse(value):
            return value.tocsr()
        return value
    if issparse(value):
        return cupy_sparse.csr_matrix(value.tocsr())
    if isinstance(value, np.ndarray | list | tuple | float | int):
        return cupy.asarray(value)
    raise TypeError(_UNSUPPORTED_VALUE_ERROR.format(typ=type(value)))


class ArchitectureAdapter:
    """Architecture configuration object injected into every component.

    Attributes:
        architecture: Selected architecture (read-only).
        is_bound: Whether operators or solver states were built on this adapter.
    """

    __slots__ = ("_architecture", "_bound")

    def __init__(self, architecture: str | Architecture = Architecture.HOST) -> None:
        """Initialize the adapter.

        Args:
            architecture: Target architecture (member or name).

        Raises:
            OptionalDependencyMissingError: If the accelerator is requested but
                cupy is not installed.
        """
        arch = Architecture.parse(architecture)
        if arch.is_device:
            require_cupy()
        self._architecture = arch
        self._bound = False

    def __repr__(self) -> str:
        return (
            f"ArchitectureAdapter({self._architecture.value!r}, bound={self._bound})"
        )

    @property
    def architecture(self) -> Architecture:
        """Selected architecture."""
        return self._architecture

    @property
    def is_bound(self) -> bool:
        """Whether the selection has been frozen by a constructed component."""
        return self._bound

    def select(self, architecture: str | Architecture) -> None:
        """Re-target the adapter before any component is built on it.

        Args:
            architecture: New target architecture.

        Raises:
            ConfigurationError: If the adapter is already bound to a different
                architecture.
        """
        arch = Architecture.parse(architecture)
        if arch is self._architecture:
            return
        if self._bound:
            raise ConfigurationError(
                _BOUND_ERROR.format(
                    current=self._architecture.value, requested=arch.value
                )
            )
        if arch.is_device:
            require_cupy()
        self._architecture = arch

    def bind(self) -> None:
        """Freeze the architecture selection for the lifetime of the adapter."""
        self._bound = True

    def require(self, architecture: Architecture, *, name: str) -> None:
        """Check that a component built elsewhere matches this adapter.

        Args:
            architecture: Architecture the component lives on.
            name: Component name for the error message.

        Raises:
            ConfigurationError: On mismatch.
        """
        if architecture is not self._architecture:
            raise ConfigurationError(
                _ARCH_MISMATCH_ERROR.format(
                    name=name,
                    got=architecture.value,
                    expected=self._architecture.value,
                )
            )

    # ------------------------------------------------------------------
    # Backend modules
    # ------------------------------------------------------------------

    @property
    def xp(self) -> ModuleType:
        """Dense array module (numpy or cupy)."""
        if self._architecture.is_device:
            return _cupy_modules()[0]
        return np

    @property
    def sparse(self) -> ModuleType:
        """Sparse matrix module (scipy.sparse or cupyx.scipy.sparse)."""
        if self._architecture.is_device:
            return _cupy_modules()[1]
        return scipy.sparse

    @property
    def linalg(self) -> ModuleType:
        """Sparse linear algebra module (scipy or cupyx sparse.linalg)."""
        if self._architecture.is_device:
            return _cupy_modules()[2]
        return scipy.sparse.linalg

    # ------------------------------------------------------------------
    # Conversion and small array helpers
    # ------------------------------------------------------------------

    def on_architecture(self, value: Any) -> Any:
        """Convert a value to this adapter's architecture."""
        return convert(value, self._architecture)

    @staticmethod
    def to_host(value: Any) -> Any:
        """Convert a value to host memory."""
        return convert(value, Architecture.HOST)

    @staticmethod
    def to_device(value: Any) -> Any:
        """Convert a value to accelerator memory."""
        return convert(value, Architecture.ACCELERATOR)

    @staticmethod
    def take(vector: Any, index: Any) -> Any:
        """Gather ``vector[index]`` (both on the same architecture)."""
        return vector[index]

    def asarray(self, value: Any) -> Any:
        """Return value as a float64 vector on this architecture."""
        return self.xp.asarray(self.on_architecture(value), dtype=np.float64)

    def zeros(self, n: int) -> Any:
        """Return a float64 zero vector of length n on this architecture."""
        return self.xp.zeros(int(n), dtype=np.float64)

    def index(self, perm: NDArray[np.integer]) -> Any:
        """Return an integer index array on this architecture."""
        return self.xp.asarray(self.on_architecture(np.asarray(perm, dtype=np.int64)))

    def isfinite_all(self, value: Any) -> bool:
        """True when every entry of value is finite."""
        return bool(self.xp.isfinite(value).all())

    def norm(self, value: Any) -> float:
        """Euclidean norm of a vector as a host float."""
        return float(self.xp.linalg.norm(value))
