from typing import Any, Iterable, Optional, Tuple

import numpy as np

from stackgrad.errors import IllegalStateError, InvalidShapeError, ShapeMismatchError

_rng = np.random.default_rng()
"""numpy.random.Generator: Source of randomness for parameter initialization.

Reseeded by :func:`manual_seed`. Every random factory on :class:`Tensor`
draws from this generator.
"""

def manual_seed(seed: Optional[int]) -> None:
    """
    Reseed the generator used for parameter initialization.

    Parameters
    ----------
    seed : int or None
        Seed passed to ``numpy.random.default_rng``. ``None`` reseeds from
        fresh OS entropy.

    Examples
    --------
    >>> manual_seed(0)
    >>> a = Tensor.uniform(3, low=-0.1, high=0.1)
    >>> manual_seed(0)
    >>> b = Tensor.uniform(3, low=-0.1, high=0.1)
    >>> bool((a.data == b.data).all())
    True
    """
    global _rng
    _rng = np.random.default_rng(seed)

def _as_buffer(values: Any) -> np.ndarray:
    """Coerce array-like ``values`` to a flat, row-major float32 buffer."""
    arr = np.ascontiguousarray(values, dtype=np.float32)
    return arr if arr.ndim == 1 else arr.reshape(-1)

def _preview(buf: Iterable[Any], limit: int = 5) -> str:
    items = list(buf)
    shown = ", ".join(f"{float(v):g}" if isinstance(v, (float, np.floating)) else str(v) for v in items[:limit])
    if len(items) > limit:
        shown += ", ..."
    return f"[{shown}]"

class Tensor:
    """
    A shaped numeric container with a parallel gradient buffer.

    Values and gradients live in flat, row-major ``float32`` NumPy buffers.
    The shape is plain metadata: callers assign it, then call :meth:`resize`
    (and :meth:`resize_grad`) to allocate storage before reading or writing.

    Notes
    -----
    - An empty shape marks an uninitialized tensor.
    - ``grad`` is never sized implicitly by :meth:`resize`; layers call
      :meth:`resize_grad` on the tensors they write gradients into.
    - Buffers are shared, not copied, wherever a tensor is handed around
      (e.g. by :meth:`Layer.parameters`), so in-place writes are visible to
      every holder.
    """
    def __init__(
        self,
        data: Any = None,
        shape: Optional[Iterable[int]] = None,
    ) -> None:
        """
        Construct a tensor, optionally from array-like data.

        Parameters
        ----------
        data : Any, optional
            Array-like values (list, tuple, ``numpy.ndarray``). They are
            converted to ``float32`` and flattened row-major. If ``shape`` is
            not given, it is inferred from ``data``.
        shape : iterable of int, optional
            Explicit shape. It is stored as given and is not checked against
            ``data``; mismatches surface when the buffer is viewed.

        Examples
        --------
        >>> Tensor()                         # uninitialized
        Tensor(not initialized)
        >>> Tensor([[1, 2, 3], [4, 5, 6]]).shape
        (2, 3)
        >>> Tensor([0.0, 1.0], shape=(2,)).size()
        2
        """
        if data is None:
            self._shape: Tuple[int, ...] = tuple(int(d) for d in shape) if shape is not None else ()
            self._data = np.zeros(0, dtype=np.float32)
        else:
            arr = np.array(data, dtype=np.float32)
            self._shape = tuple(int(d) for d in shape) if shape is not None else tuple(arr.shape)
            self._data = _as_buffer(arr)
        self._grad = np.zeros(0, dtype=np.float32)

    @property
    def shape(self) -> Tuple[int, ...]:
        """tuple of int: The tensor's extents. Empty while uninitialized."""
        return self._shape

    @shape.setter
    def shape(self, value: Iterable[int]) -> None:
        self._shape = tuple(int(d) for d in value)

    @property
    def data(self) -> np.ndarray:
        """numpy.ndarray: Flat float32 value buffer."""
        return self._data

    @data.setter
    def data(self, values: Any) -> None:
        self._data = _as_buffer(values)

    @property
    def grad(self) -> np.ndarray:
        """numpy.ndarray: Flat float32 gradient buffer (empty until sized)."""
        return self._grad

    @grad.setter
    def grad(self, values: Any) -> None:
        self._grad = _as_buffer(values)

    @property
    def ndim(self) -> int:
        """int: Number of dimensions (0 while uninitialized)."""
        return len(self._shape)

    def validate_shape(self) -> bool:
        """
        Return whether the shape describes a non-empty tensor.

        Returns
        -------
        bool
            False if the shape is empty or any dimension is 0, True otherwise.
        """
        if not self._shape:
            return False
        return all(d > 0 for d in self._shape)

    def size(self) -> int:
        """
        Total number of elements implied by the shape.

        Raises
        ------
        InvalidShapeError
            If :meth:`validate_shape` is False.
        """
        if not self.validate_shape():
            raise InvalidShapeError(f"Invalid tensor shape: {list(self._shape)}")
        return int(np.prod(self._shape, dtype=np.int64))

    def _resized(self, buf: np.ndarray) -> np.ndarray:
        n = self.size()
        if buf.size == n:
            return buf
        out = np.zeros(n, dtype=np.float32)
        keep = min(n, buf.size)
        out[:keep] = buf[:keep]
        return out

    def resize(self) -> None:
        """
        Size ``data`` to exactly :meth:`size` elements.

        Values already resident are preserved up to the overlap. When the
        size already matches, the buffer object is kept as is.
        """
        self._data = self._resized(self._data)

    def resize_grad(self) -> None:
        """Size ``grad`` to exactly :meth:`size` elements; see :meth:`resize`."""
        self._grad = self._resized(self._grad)

    def zero_grad(self) -> None:
        """
        Set every element of ``grad`` to zero in place.

        Notes
        -----
        An unsized gradient buffer is left empty; this is not an error.
        """
        self._grad.fill(0.0)

    def view(self) -> np.ndarray:
        """
        Return ``data`` reshaped to :attr:`shape`.

        The result shares memory with the flat buffer, so writes through it
        update the tensor.

        Raises
        ------
        InvalidShapeError
            If the shape is invalid.
        ShapeMismatchError
            If the buffer length differs from :meth:`size`.
        """
        n = self.size()
        if self._data.size != n:
            raise ShapeMismatchError(
                f"data holds {self._data.size} elements but shape {list(self._shape)} needs {n}"
            )
        return self._data.reshape(self._shape)

    def grad_view(self) -> np.ndarray:
        """
        Return ``grad`` reshaped to :attr:`shape`.

        Raises
        ------
        IllegalStateError
            If the gradient buffer has never been populated.
        ShapeMismatchError
            If the buffer length differs from :meth:`size`.
        """
        if self._grad.size == 0:
            raise IllegalStateError("gradient buffer is empty; populate it before backward")
        n = self.size()
        if self._grad.size != n:
            raise ShapeMismatchError(
                f"grad holds {self._grad.size} elements but shape {list(self._shape)} needs {n}"
            )
        return self._grad.reshape(self._shape)

    def numpy(self) -> np.ndarray:
        """Return a shaped copy of the values."""
        return self.view().copy()

    def __repr__(self) -> str:
        """
        Bounded preview of the tensor for diagnostics.

        Examples
        --------
        >>> t = Tensor([[1, 2, 3], [4, 5, 6]])
        >>> t
        Tensor(shape=[2, 3], data=[1, 2, 3, 4, 5, ...])
        """
        if not self._shape:
            return "Tensor(not initialized)"
        parts = [f"shape={_preview(self._shape)}"]
        parts.append(f"data={_preview(self._data)}" if self._data.size else "data=[no data]")
        if self._grad.size:
            parts.append(f"grad={_preview(self._grad)}")
        return f"Tensor({', '.join(parts)})"

    @staticmethod
    def zeros(*shape: int) -> "Tensor":
        """
        Create a tensor of the given shape filled with zeros.

        The gradient buffer is left unsized.
        """
        out = Tensor(shape=shape)
        out.resize()
        return out

    @staticmethod
    def uniform(*shape: int, low: float = 0.0, high: float = 1.0) -> "Tensor":
        """
        Create a tensor with values drawn uniformly from ``[low, high)``.

        Parameters
        ----------
        *shape : int
            Shape of the output tensor.
        low, high : float
            Bounds of the distribution.

        Returns
        -------
        Tensor
            A float32 tensor; its gradient buffer is left unsized.

        Notes
        -----
        Draws from the module-level generator, see :func:`manual_seed`.
        """
        out = Tensor(shape=shape)
        out.data = _rng.uniform(low, high, size=out.size())
        return out
