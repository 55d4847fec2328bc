import logging
from typing import Any, Iterator, List, Optional, Tuple

import numpy as np

from stackgrad.errors import IllegalStateError, ShapeMismatchError, SizeMismatchError
from stackgrad.tensor import Tensor

logger = logging.getLogger(__name__)

class Layer:
    """
    Base class for all layers.

    A layer maps one tensor to another in :meth:`forward` and maps the
    gradient of its output back to the gradient of its input in
    :meth:`backward`. Parametric layers also accumulate into the gradients
    of the tensors they own.

    Tensors assigned as attributes are registered as parameters
    automatically via :meth:`__setattr__`. Tensors that carry no gradient
    (e.g. running statistics) are registered with :meth:`register_buffer`
    instead and never appear in :meth:`parameters`.
    """
    def __init__(self) -> None:
        """
        Initialize an empty layer.

        Attributes
        ----------
        _parameters : dict[str, Tensor]
            Registered gradient-bearing tensors, in assignment order.
        _buffers : dict[str, Tensor or None]
            Registered tensors that are state but not parameters.
        """
        self._parameters = {}
        self._buffers = {}

    def parameters(self) -> List[Tensor]:
        """
        Return the layer's parameters.

        Returns
        -------
        list[Tensor]
            The live parameter tensors (not copies) in registration order.
            Writing through them mutates the layer.
        """
        return list(self._parameters.values())

    def buffers(self) -> List[Tensor]:
        """Return the registered non-parameter tensors that are present."""
        return [b for b in self._buffers.values() if b is not None]

    def register_buffer(self, name: str, tensor: Optional[Tensor]) -> None:
        """
        Attach ``tensor`` as attribute ``name`` without making it a parameter.

        Parameters
        ----------
        name : str
            Attribute name.
        tensor : Tensor or None
            The buffer. ``None`` records the slot as absent.
        """
        self._parameters.pop(name, None)
        self._buffers[name] = tensor
        object.__setattr__(self, name, tensor)

    def zero_grad(self) -> None:
        """
        Size every parameter's gradient buffer and fill it with zeros.

        Parameter gradients accumulate across :meth:`backward` calls; call
        this before starting a fresh accumulation cycle.
        """
        for param in self.parameters():
            param.resize_grad()
            param.zero_grad()

    def __setattr__(self, name: str, value: Any) -> None:
        """
        Register tensors assigned as attributes.

        Notes
        -----
        - Assigning a :class:`Tensor` registers it in ``self._parameters``
          unless ``name`` was registered as a buffer.
        - Everything is still set as a normal attribute via ``super().__setattr__``.
        """
        if isinstance(value, Tensor) and name not in self.__dict__.get("_buffers", {}):
            self._parameters[name] = value
        super().__setattr__(name, value)

    def label(self) -> str:
        """Return a short human-readable description of the layer."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return self.label()

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.forward(*args, **kwargs)

    def forward(self, input: Tensor, output: Optional[Tensor] = None) -> Tensor:
        """
        Compute the layer's output.

        Parameters
        ----------
        input : Tensor
            Input tensor with populated ``data``.
        output : Tensor, optional
            Tensor to write into. Its shape is overwritten and its data buffer
            resized. A new tensor is created when omitted.

        Returns
        -------
        Tensor
            ``output``.
        """
        raise NotImplementedError

    def backward(self, output: Tensor, input: Tensor) -> Tensor:
        """
        Propagate the gradient stored in ``output.grad`` into ``input.grad``.

        Parameters
        ----------
        output : Tensor
            The tensor produced by :meth:`forward`, with ``grad`` holding the
            upstream gradient.
        input : Tensor
            The tensor that was passed to :meth:`forward`. Its gradient buffer
            is sized and overwritten (not accumulated).

        Returns
        -------
        Tensor
            ``input``.

        Notes
        -----
        Parameter gradients are accumulated additively.
        """
        raise NotImplementedError

class Linear(Layer):
    """
    Fully-connected linear layer.

    Computes ``y = x @ W + b`` with ``W`` shaped ``(in_features, out_features)``.

    Parameters
    ----------
    in_features : int
        Number of input features.
    out_features : int
        Number of output features.

    Notes
    -----
    Weight and bias are drawn uniformly from ``[-0.1, 0.1]``.
    """
    def __init__(self, in_features: int, out_features: int) -> None:
        super().__init__()
        self.in_features = in_features
        self.out_features = out_features
        self.weight = Tensor.uniform(in_features, out_features, low=-0.1, high=0.1)
        self.bias = Tensor.uniform(out_features, low=-0.1, high=0.1)

    def label(self) -> str:
        return f"{self.__class__.__name__}(in_features={self.in_features}, out_features={self.out_features})"

    def forward(self, input: Tensor, output: Optional[Tensor] = None) -> Tensor:
        """
        Parameters
        ----------
        input : Tensor
            Input tensor of shape ``(batch, in_features)``.

        Returns
        -------
        Tensor
            Output tensor of shape ``(batch, out_features)``.

        Raises
        ------
        ShapeMismatchError
            If ``input`` is not ``(batch, in_features)``.
        """
        if input.ndim != 2 or input.shape[1] != self.in_features:
            raise ShapeMismatchError(
                f"{self.label()} expects input [batch, {self.in_features}], got {list(input.shape)}"
            )
        x = input.view()
        output = Tensor() if output is None else output
        output.shape = (input.shape[0], self.out_features)
        output.resize()
        output.view()[...] = x @ self.weight.view() + self.bias.data
        return output

    def backward(self, output: Tensor, input: Tensor) -> Tensor:
        """
        Matmul backward.

        ``input.grad = dy @ W^T`` (overwritten), ``weight.grad += x^T @ dy``
        and ``bias.grad += sum_b dy`` (accumulated).
        """
        if output.ndim != 2 or output.shape[1] != self.out_features:
            raise ShapeMismatchError(
                f"{self.label()} expects output gradient [batch, {self.out_features}], got {list(output.shape)}"
            )
        if input.ndim != 2 or input.shape != (output.shape[0], self.in_features):
            raise ShapeMismatchError(
                f"{self.label()} expects input [{output.shape[0]}, {self.in_features}], got {list(input.shape)}"
            )
        dy = output.grad_view()
        x = input.view()

        input.resize_grad()
        input.grad_view()[...] = dy @ self.weight.view().T

        self.weight.resize_grad()
        self.weight.grad += (x.T @ dy).reshape(-1)
        self.bias.resize_grad()
        self.bias.grad += dy.sum(axis=0)
        return input

class _Activation(Layer):
    """
    Shape-preserving elementwise activation.

    Subclasses define :meth:`_apply` (the function) and :meth:`_derivative`
    (the local gradient expressed in terms of the forward *output*).
    """
    def _apply(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def _derivative(self, y: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def label(self) -> str:
        return f"{self.__class__.__name__}()"

    def forward(self, input: Tensor, output: Optional[Tensor] = None) -> Tensor:
        x = input.view()
        output = Tensor() if output is None else output
        output.shape = input.shape
        output.resize()
        output.view()[...] = self._apply(x)
        return output

    def backward(self, output: Tensor, input: Tensor) -> Tensor:
        dy = output.grad_view()
        y = output.view()
        if input.shape != output.shape:
            raise ShapeMismatchError(
                f"{self.label()} input {list(input.shape)} does not match output {list(output.shape)}"
            )
        input.resize_grad()
        input.grad[...] = (dy * self._derivative(y)).reshape(-1)
        return input

class ReLU(_Activation):
    """Element-wise ReLU activation: ``max(0, x)``."""
    def _apply(self, x: np.ndarray) -> np.ndarray:
        return np.maximum(0, x)

    def _derivative(self, y: np.ndarray) -> np.ndarray:
        return (y > 0).astype(y.dtype)

class Sigmoid(_Activation):
    """Element-wise logistic sigmoid: ``1 / (1 + exp(-x))``."""
    def _apply(self, x: np.ndarray) -> np.ndarray:
        return 1 / (1 + np.exp(-x))

    def _derivative(self, y: np.ndarray) -> np.ndarray:
        return y * (1 - y)

class Tanh(_Activation):
    """Element-wise hyperbolic tangent activation."""
    def _apply(self, x: np.ndarray) -> np.ndarray:
        return np.tanh(x)

    def _derivative(self, y: np.ndarray) -> np.ndarray:
        return 1 - y * y

class _BatchNorm(Layer):
    """
    Batch Normalization over the channel dimension (axis 1).

    Statistics are taken over every axis except the channel axis, using the
    biased (divide-by-N) variance. The subclasses differ only in the input
    rank they accept.

    Parameters
    ----------
    num_features : int
        Number of features/channels in dimension 1.
    eps : float, default=1e-5
        Small constant for numerical stability.
    momentum : float, default=0.1
        Weight of the current batch in the running mean/variance update.
    affine : bool, default=True
        If True, includes learnable scale (``gamma``) and shift (``beta``).
    track_running_stats : bool, default=True
        If True, maintains ``running_mean`` and ``running_var``.

    Notes
    -----
    - The first forward call sets the running statistics to the batch
      statistics; later calls blend them as
      ``running = (1 - momentum) * running + momentum * batch``.
    - The last forward input is cached so :meth:`backward` can recompute the
      batch statistics. One instance therefore supports a single forward in
      flight: interleaving two forwards before their backwards gives wrong
      gradients for the first one.
    """
    _input_ndim = 2
    _layout = "[batch_size, num_features]"
    # Whether backward starts by zeroing gamma/beta gradients.
    _reset_affine_grads = False

    def __init__(
        self,
        num_features: int,
        eps: float = 1e-5,
        momentum: float = 0.1,
        affine: bool = True,
        track_running_stats: bool = True,
    ) -> None:
        super().__init__()
        self.num_features = num_features
        self.eps = eps
        self.momentum = momentum
        self.affine = affine
        self.track_running_stats = track_running_stats

        if self.affine:
            self.gamma = Tensor.uniform(num_features, low=0.9, high=1.1)
            self.gamma.resize_grad()
            self.beta = Tensor.zeros(num_features)
            self.beta.resize_grad()
        else:
            self.gamma = None
            self.beta = None

        if self.track_running_stats:
            self.register_buffer("running_mean", Tensor.zeros(num_features))
            self.register_buffer("running_var", Tensor.zeros(num_features))
        else:
            self.register_buffer("running_mean", None)
            self.register_buffer("running_var", None)

        self.first_update = True
        self._input_data: Optional[np.ndarray] = None
        self._input_shape: Tuple[int, ...] = ()

    def label(self) -> str:
        return f"{self.__class__.__name__}({self.num_features})"

    def _check_layout(self, shape: Tuple[int, ...], what: str) -> None:
        if len(shape) != self._input_ndim or shape[1] != self.num_features:
            raise ShapeMismatchError(
                f"{self.label()} expects {what} {self._layout} with {self.num_features} channels, got {list(shape)}"
            )

    def _param_shape(self) -> Tuple[int, ...]:
        """Shape that broadcasts a per-channel vector against the input."""
        return (1, self.num_features) + (1,) * (self._input_ndim - 2)

    def _reduce_axes(self) -> Tuple[int, ...]:
        return (0,) + tuple(range(2, self._input_ndim))

    def _batch_stats(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        axes = self._reduce_axes()
        return x.mean(axis=axes), x.var(axis=axes)

    def _update_running_stats(self, mean: np.ndarray, var: np.ndarray) -> None:
        if self.first_update:
            logger.debug("%s: initializing running statistics from first batch", self.label())
            self.running_mean.data[...] = mean
            self.running_var.data[...] = var
        else:
            m = self.momentum
            self.running_mean.data[...] = (1 - m) * self.running_mean.data + m * mean
            self.running_var.data[...] = (1 - m) * self.running_var.data + m * var

    def forward(self, input: Tensor, output: Optional[Tensor] = None) -> Tensor:
        """
        Parameters
        ----------
        input : Tensor
            Input whose rank matches the variant and whose dimension 1 equals
            ``num_features``.

        Returns
        -------
        Tensor
            Batch-normalized tensor with the same shape as input.

        Raises
        ------
        ShapeMismatchError
            On a rank or channel mismatch, or if the data buffer does not
            match the shape.
        """
        self._check_layout(input.shape, "input")
        x = input.view()
        self._input_data = x.copy()
        self._input_shape = input.shape

        mean, var = self._batch_stats(x)
        if self.track_running_stats:
            self._update_running_stats(mean, var)

        bshape = self._param_shape()
        inv_std = 1.0 / np.sqrt(var + self.eps)
        x_hat = (x - mean.reshape(bshape)) * inv_std.reshape(bshape)
        if self.affine:
            y = self.gamma.data.reshape(bshape) * x_hat + self.beta.data.reshape(bshape)
        else:
            y = x_hat

        output = Tensor() if output is None else output
        output.shape = self._input_shape
        output.resize()
        output.view()[...] = y
        self.first_update = False
        return output

    def backward(self, output: Tensor, input: Tensor) -> Tensor:
        """
        Propagate ``output.grad`` through the normalization.

        The batch mean and variance are recomputed from the cached forward
        input. Per channel, with ``N`` positions::

            dx = inv_std * gamma * (dy - mean(dy) - x_hat * mean(dy * x_hat))

        and, if affine, ``beta.grad += sum(dy)`` and
        ``gamma.grad += sum(dy * x_hat)``.

        Raises
        ------
        IllegalStateError
            If :meth:`forward` has not been called, or ``output.grad`` is empty.
        ShapeMismatchError
            If ``output`` does not match the shape of the cached input.
        """
        if self._input_data is None:
            raise IllegalStateError(f"{self.label()}: forward must be called before backward")
        self._check_layout(output.shape, "output gradient")
        if output.shape != self._input_shape:
            raise ShapeMismatchError(
                f"{self.label()}: output gradient {list(output.shape)} does not match "
                f"cached input {list(self._input_shape)}"
            )
        dy = output.grad_view()
        x = self._input_data

        mean, var = self._batch_stats(x)
        bshape = self._param_shape()
        axes = self._reduce_axes()
        count = x.size // self.num_features

        inv_std = (1.0 / np.sqrt(var + self.eps)).reshape(bshape)
        x_hat = (x - mean.reshape(bshape)) * inv_std
        sum_dy = dy.sum(axis=axes)
        sum_dy_x_hat = (dy * x_hat).sum(axis=axes)
        gamma = self.gamma.data.reshape(bshape) if self.affine else 1.0

        dx = inv_std * gamma * (
            dy
            - sum_dy.reshape(bshape) / count
            - x_hat * sum_dy_x_hat.reshape(bshape) / count
        )

        input.shape = self._input_shape
        input.resize()
        input.resize_grad()
        input.grad_view()[...] = dx

        if self.affine:
            self.gamma.resize_grad()
            self.beta.resize_grad()
            if self._reset_affine_grads:
                self.gamma.zero_grad()
                self.beta.zero_grad()
            self.beta.grad += sum_dy
            self.gamma.grad += sum_dy_x_hat
        return input

class BatchNorm1d(_BatchNorm):
    """
    Batch Normalization over ``(N, C)`` inputs.

    Gamma/beta gradients accumulate across :meth:`backward` calls until they
    are zeroed externally (see :meth:`Layer.zero_grad`).
    """
    _input_ndim = 2
    _layout = "[batch_size, num_features]"
    _reset_affine_grads = False

class BatchNorm2d(_BatchNorm):
    """
    Batch Normalization over ``(N, C, H, W)`` inputs.

    Gamma/beta gradients are reset at the start of every :meth:`backward`
    call, so they hold the contribution of the latest call only.
    """
    _input_ndim = 4
    _layout = "[N, C, H, W]"
    _reset_affine_grads = True

class BatchNorm3d(_BatchNorm):
    """
    Batch Normalization over ``(N, C, D, H, W)`` inputs.

    Gamma/beta gradients are reset at the start of every :meth:`backward`
    call, as in :class:`BatchNorm2d`.
    """
    _input_ndim = 5
    _layout = "[N, C, D, H, W]"
    _reset_affine_grads = True

class Model:
    """
    An ordered stack of layers driven as a single forward/backward pipeline.

    Parameters
    ----------
    *layers : Layer
        Layers appended in the given order.

    Notes
    -----
    The model owns its layers and the intermediate activations between
    them. Activations are rebuilt on every :meth:`forward`, so one model
    instance must not process two inputs concurrently.
    """
    def __init__(self, *layers: Layer) -> None:
        self.layers: List[Layer] = []
        self.activations: Optional[List[Tensor]] = None
        for layer in layers:
            self.add_layer(layer)

    def add_layer(self, layer: Layer) -> "Model":
        """
        Append ``layer`` to the end of the stack.

        Returns
        -------
        Model
            ``self`` (to allow chaining).
        """
        assert isinstance(layer, Layer), f"All elements must be Layer instances, got {type(layer)}"
        self.layers.append(layer)
        self.activations = None
        return self

    def forward(self, input: Tensor, output: Optional[Tensor] = None) -> Tensor:
        """
        Stream ``input`` through every layer in order.

        Layer ``i`` writes into activation ``i``; the last layer writes into
        ``output``.

        If any layer raises, the activation cache is left empty, so a
        following :meth:`backward` fails with :class:`IllegalStateError`.

        Raises
        ------
        IllegalStateError
            If the model has no layers.
        """
        if not self.layers:
            raise IllegalStateError("Model has no layers; add at least one layer before forward")
        output = Tensor() if output is None else output
        # Published only once every layer has run.
        self.activations = None
        activations = [Tensor() for _ in range(len(self.layers) - 1)]

        current = input
        for i, layer in enumerate(self.layers):
            nxt = output if i == len(self.layers) - 1 else activations[i]
            layer.forward(current, nxt)
            logger.debug("forward %d %s -> %s", i, layer.label(), list(nxt.shape))
            current = nxt
        self.activations = activations
        return output

    def backward(self, output: Tensor, input: Tensor) -> Tensor:
        """
        Stream the gradient in ``output.grad`` backward through every layer.

        Each layer reads the gradient of the tensor it produced and writes
        the gradient of the tensor it consumed; the first layer writes into
        ``input.grad``.

        Raises
        ------
        IllegalStateError
            If :meth:`forward` has not populated the activation cache for the
            current layer stack.
        """
        if self.activations is None or len(self.activations) != len(self.layers) - 1:
            raise IllegalStateError("Forward pass must be called before backward pass")

        current = output
        for i in range(len(self.layers) - 1, -1, -1):
            prev = self.activations[i - 1] if i > 0 else input
            self.layers[i].backward(current, prev)
            logger.debug("backward %d %s -> %s", i, self.layers[i].label(), list(prev.shape))
            current = prev
        return input

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.forward(*args, **kwargs)

    def parameters(self) -> List[Tensor]:
        """
        Return every layer's parameters, concatenated in layer order.

        The tensors are the live parameters, not copies.
        """
        params = []
        for layer in self.layers:
            params.extend(layer.parameters())
        return params

    def zero_grad(self) -> None:
        """Zero the gradients of all parameters (see :meth:`Layer.zero_grad`)."""
        for layer in self.layers:
            layer.zero_grad()

    def label(self) -> str:
        """Return the label of every layer, one per line."""
        return "".join(f"{layer.label()}\n" for layer in self.layers)

    def __repr__(self):
        lines = [f"{self.__class__.__name__}("]
        for idx, layer in enumerate(self.layers):
            lines.append(f"  ({idx}): {layer.label()}")
        lines.append(")")
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self.layers)

    def __getitem__(self, idx: int) -> Layer:
        """Return the layer at position ``idx``."""
        return self.layers[idx]

    def __iter__(self) -> Iterator[Layer]:
        return iter(self.layers)

def mse_loss(pred: Tensor, target: Tensor) -> Tensor:
    """
    Mean-squared error between two tensors of equal element count.

    Parameters
    ----------
    pred : Tensor
        Predicted values.
    target : Tensor
        Target values. Only the element count must match ``pred``.

    Returns
    -------
    Tensor
        Tensor of shape ``(1,)`` holding ``mean((pred - target) ** 2)``. No
        gradient is produced; seed ``output.grad`` for :meth:`Model.backward`
        yourself.

    Raises
    ------
    SizeMismatchError
        If the flattened sizes differ.
    InvalidShapeError
        If either tensor is uninitialized.
    """
    if pred.size() != target.size():
        raise SizeMismatchError(
            f"Prediction and target tensors must have same size, got {pred.size()} and {target.size()}"
        )
    diff = pred.view().astype(np.float64).ravel() - target.view().astype(np.float64).ravel()
    return Tensor([np.mean(diff * diff)], shape=(1,))
