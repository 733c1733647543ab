# kerasgraph/layers.py

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .config import ModelSchema
from .errors import ConfigurationError, ShapeInferenceError

Dim = Optional[int]
Shape = Tuple[Dim, ...]

_KIND_BY_RANK = {1: "ff", 2: "rnn", 3: "cnn", 4: "cnn3d"}


@dataclass(frozen=True)
class OutputType:
    """
    Per-example output description of a node.

    ``shape`` excludes the batch axis and follows the layout of the imported
    config: channels-last unless ``channels_last`` is False. ``None`` entries
    mark unknown (variable) extents such as sequence length.
    """

    kind: str
    shape: Shape
    channels_last: bool = True

    @classmethod
    def from_shape(cls, shape: Sequence[Dim], channels_last: bool = True) -> "OutputType":
        dims = tuple(None if d is None else int(d) for d in shape)
        kind = _KIND_BY_RANK.get(len(dims))
        if kind is None:
            raise ShapeInferenceError(f"Unsupported input rank {len(dims)} for shape {dims}")
        return cls(kind=kind, shape=dims, channels_last=channels_last)

    @property
    def channels(self) -> Dim:
        if self.kind == "ff":
            return self.shape[0]
        return self.shape[-1] if self.channels_last else self.shape[0]

    @property
    def spatial(self) -> Shape:
        """Dims that a global pooling layer reduces over."""
        if self.kind == "ff":
            return ()
        return self.shape[:-1] if self.channels_last else self.shape[1:]

    def with_channels(self, channels: Dim) -> "OutputType":
        if self.kind == "ff":
            return OutputType("ff", (channels,))
        if self.channels_last:
            return OutputType(self.kind, self.spatial + (channels,), True)
        return OutputType(self.kind, (channels,) + self.spatial, False)


InferFn = Callable[[Mapping[str, Any], List[OutputType], ModelSchema], OutputType]


@dataclass(frozen=True)
class LayerSpec:
    """
    Registry entry for a layer class.

    Attributes:
      class_name: Keras class name.
      kind: 'input', 'layer', 'vertex' (merge-style, several inputs) or 'loss'.
      loop_capable: Whether nodes of this class may be cloned to break a cycle.
      infer: Output-type function; unused for inputs.
    """

    class_name: str
    kind: str
    loop_capable: bool
    infer: Optional[InferFn]


_REGISTRY: Dict[str, LayerSpec] = {}


def register_layer(spec: LayerSpec) -> LayerSpec:
    _REGISTRY[spec.class_name] = spec
    return spec


def get_layer_spec(class_name: str) -> LayerSpec:
    try:
        return _REGISTRY[class_name]
    except KeyError:
        raise ConfigurationError(f"Unsupported Keras layer class {class_name!r}") from None


def registered_layers() -> Tuple[str, ...]:
    return tuple(sorted(_REGISTRY))


# --- Helpers -----------------------------------------------------------------


def _single(inputs: List[OutputType]) -> OutputType:
    if len(inputs) != 1:
        raise ShapeInferenceError(f"Expected exactly one input type, got {len(inputs)}")
    return inputs[0]


def _int_param(params: Mapping[str, Any], key: str) -> int:
    if key not in params:
        raise ConfigurationError(f"Layer config is missing required field {key!r}")
    try:
        return int(params[key])
    except (TypeError, ValueError):
        raise ConfigurationError(f"Field {key!r} must be an integer, got {params[key]!r}") from None


def _triple(value: Any, key: str) -> Tuple[int, int, int]:
    if isinstance(value, int):
        return (value, value, value)
    values = tuple(int(v) for v in value)
    if len(values) != 3:
        raise ConfigurationError(f"Field {key!r} must have three entries, got {value!r}")
    return values  # type: ignore[return-value]


def _channels_last(params: Mapping[str, Any], schema: ModelSchema) -> bool:
    try:
        return schema.is_channels_last(params.get(schema.layer_field_data_format))
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from None


# --- Inference functions -----------------------------------------------------


def _identity(params: Mapping[str, Any], inputs: List[OutputType], schema: ModelSchema) -> OutputType:
    return _single(inputs)


def _dense(params: Mapping[str, Any], inputs: List[OutputType], schema: ModelSchema) -> OutputType:
    units = _int_param(params, schema.layer_field_units)
    source = _single(inputs)
    if source.kind == "ff":
        return OutputType("ff", (units,))
    # Dense applies to the last axis of higher-rank inputs.
    return OutputType(source.kind, source.shape[:-1] + (units,), source.channels_last)


def _lambda(params: Mapping[str, Any], inputs: List[OutputType], schema: ModelSchema) -> OutputType:
    output_shape = params.get(schema.layer_field_output_shape)
    if output_shape is not None:
        return OutputType.from_shape(list(output_shape))
    if not inputs:
        raise ShapeInferenceError("Lambda has no resolved inputs and no output_shape")
    return inputs[0]


def _flatten(params: Mapping[str, Any], inputs: List[OutputType], schema: ModelSchema) -> OutputType:
    source = _single(inputs)
    if any(d is None for d in source.shape):
        raise ShapeInferenceError(f"Cannot flatten shape with unknown dims {source.shape}")
    return OutputType("ff", (math.prod(source.shape),))


def _elementwise(params: Mapping[str, Any], inputs: List[OutputType], schema: ModelSchema) -> OutputType:
    if not inputs:
        raise ShapeInferenceError("Merge layer has no resolved inputs")
    first = inputs[0]
    for other in inputs[1:]:
        if other.shape != first.shape:
            raise ShapeInferenceError(
                f"Merge inputs have mismatched shapes {[t.shape for t in inputs]}"
            )
    return first


def _concatenate(params: Mapping[str, Any], inputs: List[OutputType], schema: ModelSchema) -> OutputType:
    if not inputs:
        raise ShapeInferenceError("Concatenate has no resolved inputs")
    rank = len(inputs[0].shape)
    if any(len(t.shape) != rank for t in inputs):
        raise ShapeInferenceError(f"Concatenate inputs differ in rank {[t.shape for t in inputs]}")
    axis = int(params.get(schema.layer_field_axis, -1))
    # Keras axes count the batch dimension.
    axis = axis + rank + 1 if axis < 0 else axis
    if not 1 <= axis <= rank:
        raise ShapeInferenceError(f"Concatenate axis {params.get(schema.layer_field_axis)} out of range")
    axis -= 1
    total: Dim = 0
    for t in inputs:
        for dim_idx, (a, b) in enumerate(zip(t.shape, inputs[0].shape)):
            if dim_idx != axis and a != b:
                raise ShapeInferenceError(
                    f"Concatenate inputs disagree off the concat axis {[t.shape for t in inputs]}"
                )
        dim = t.shape[axis]
        total = None if total is None or dim is None else total + dim
    shape = list(inputs[0].shape)
    shape[axis] = total
    return OutputType(inputs[0].kind, tuple(shape), inputs[0].channels_last)


def _merge(params: Mapping[str, Any], inputs: List[OutputType], schema: ModelSchema) -> OutputType:
    mode = params.get("mode", "sum")
    if mode == "concat":
        concat_params = {schema.layer_field_axis: params.get("concat_axis", -1)}
        return _concatenate(concat_params, inputs, schema)
    if mode in ("sum", "mul", "ave", "max"):
        return _elementwise(params, inputs, schema)
    raise ConfigurationError(f"Unsupported Merge mode {mode!r}")


def _recurrent(params: Mapping[str, Any], inputs: List[OutputType], schema: ModelSchema) -> OutputType:
    units = _int_param(params, schema.layer_field_units)
    source = _single(inputs)
    if source.kind != "rnn":
        raise ShapeInferenceError(f"Recurrent layer expects a sequence input, got {source.kind}")
    if params.get(schema.layer_field_return_sequences, False):
        return OutputType("rnn", (source.shape[0], units))
    return OutputType("ff", (units,))


def _global_pooling(rank: int) -> InferFn:
    kind = _KIND_BY_RANK[rank + 1]

    def _infer(params: Mapping[str, Any], inputs: List[OutputType], schema: ModelSchema) -> OutputType:
        source = _single(inputs)
        if source.kind != kind:
            raise ShapeInferenceError(f"Global pooling expects {kind} input, got {source.kind}")
        channels_last = _channels_last(params, schema)
        channels = source.shape[-1] if channels_last else source.shape[0]
        return OutputType("ff", (channels,))

    return _infer


def _pooling3d(params: Mapping[str, Any], inputs: List[OutputType], schema: ModelSchema) -> OutputType:
    source = _single(inputs)
    if source.kind != "cnn3d":
        raise ShapeInferenceError(f"3D pooling expects a cnn3d input, got {source.kind}")
    pool = _triple(params.get(schema.layer_field_pool_size, 2), schema.layer_field_pool_size)
    strides_value = params.get(schema.layer_field_strides)
    strides = pool if strides_value is None else _triple(strides_value, schema.layer_field_strides)
    padding = params.get(schema.layer_field_padding, "valid")
    if padding not in ("valid", "same"):
        raise ConfigurationError(f"Unsupported padding {padding!r}")
    channels_last = _channels_last(params, schema)
    if channels_last:
        spatial, channels = source.shape[:3], source.shape[3]
    else:
        spatial, channels = source.shape[1:], source.shape[0]

    out: List[Dim] = []
    for size, k, s in zip(spatial, pool, strides):
        if size is None:
            out.append(None)
        elif padding == "valid":
            if size < k:
                raise ShapeInferenceError(f"Pool size {pool} exceeds input extent {spatial}")
            out.append((size - k) // s + 1)
        else:
            out.append(-(-size // s))
    shape = tuple(out) + (channels,) if channels_last else (channels,) + tuple(out)
    return OutputType("cnn3d", shape, channels_last)


register_layer(LayerSpec("InputLayer", "input", False, None))
register_layer(LayerSpec("Dense", "layer", False, _dense))
register_layer(LayerSpec("Activation", "layer", False, _identity))
register_layer(LayerSpec("Dropout", "layer", False, _identity))
register_layer(LayerSpec("Lambda", "layer", True, _lambda))
register_layer(LayerSpec("Flatten", "layer", False, _flatten))
for _name in ("Add", "Subtract", "Multiply", "Average", "Maximum", "Minimum"):
    register_layer(LayerSpec(_name, "vertex", False, _elementwise))
register_layer(LayerSpec("Concatenate", "vertex", False, _concatenate))
register_layer(LayerSpec("Merge", "vertex", False, _merge))
for _name in ("LSTM", "GRU", "SimpleRNN"):
    register_layer(LayerSpec(_name, "layer", False, _recurrent))
for _rank in (1, 2, 3):
    for _prefix in ("GlobalAveragePooling", "GlobalMaxPooling"):
        register_layer(LayerSpec(f"{_prefix}{_rank}D", "layer", False, _global_pooling(_rank)))
register_layer(LayerSpec("MaxPooling3D", "layer", False, _pooling3d))
register_layer(LayerSpec("AveragePooling3D", "layer", False, _pooling3d))
register_layer(LayerSpec("Loss", "loss", False, _identity))
