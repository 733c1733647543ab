"""
Import of Keras model configurations into kerasgraph Graphs.

Reads the JSON model configuration Keras stores alongside a model (either as
a standalone ``.json`` file or as the ``model_config`` attribute of an HDF5
model file), turns every layer into a NodeConfig and hands the ordered list to
GraphBuilder. Weight loading is not handled here.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .config import BuildOptions, ModelSchema, schema_for
from .errors import ConfigurationError
from .graph import Graph, GraphBuilder, Node, NodeConfig
from .layers import OutputType

try:
    import h5py  # type: ignore
except Exception:  # pragma: no cover - optional dependency
    h5py = None  # type: ignore

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]
ConfigSource = Union[str, bytes, Mapping[str, Any]]


@dataclass
class ParsedModel:
    """Layer list and model-level metadata extracted from a model config."""

    class_name: str
    inputs: List[str]
    outputs: List[str]
    layers: List[NodeConfig]
    keras_version: int
    backend: Optional[str] = None
    name: Optional[str] = None


# --- Config parsing ----------------------------------------------------------


def _as_mapping(config: ConfigSource, what: str) -> Dict[str, Any]:
    if isinstance(config, bytes):
        config = config.decode("utf-8")
    if isinstance(config, str):
        try:
            config = json.loads(config)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Could not parse {what} JSON: {exc}") from exc
    if not isinstance(config, Mapping):
        raise ConfigurationError(f"Expected {what} to be a JSON object, got {type(config).__name__}")
    return dict(config)


def _require(mapping: Mapping[str, Any], key: str, where: str) -> Any:
    if key not in mapping:
        raise ConfigurationError(f"Could not find {key!r} in {where}")
    return mapping[key]


def determine_keras_version(model_config: Mapping[str, Any], field_name: str = "keras_version") -> int:
    """Major Keras version recorded in the config ('2.4.0' -> 2); 2 when absent."""
    version = model_config.get(field_name)
    if version is None:
        return 2
    try:
        return int(str(version).split(".")[0])
    except ValueError:
        raise ConfigurationError(f"Unrecognised Keras version {version!r}") from None


def _layer_name(layer: Mapping[str, Any], schema: ModelSchema) -> str:
    name = layer.get(schema.layer_field_name)
    if not name:
        inner = layer.get(schema.layer_field_config) or {}
        name = inner.get(schema.layer_field_name)
    if not name:
        raise ConfigurationError(f"Layer config has no {schema.layer_field_name!r} field: {dict(layer)!r}")
    return str(name)


def _history_names(value: Any) -> List[str]:
    """Collect producer names from a Keras 3 call-args structure."""
    names: List[str] = []
    if isinstance(value, Mapping):
        inner = value.get("config")
        if isinstance(inner, Mapping) and "keras_history" in inner:
            names.append(str(inner["keras_history"][0]))
        else:
            for item in value.values():
                names.extend(_history_names(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            names.extend(_history_names(item))
    return names


def _inbound_names(layer: Mapping[str, Any], schema: ModelSchema) -> List[str]:
    nodes = layer.get(schema.layer_field_inbound_nodes) or []
    names: List[str] = []
    for node in nodes:
        if isinstance(node, Mapping):
            refs = _history_names(node.get("args", [])) + _history_names(node.get("kwargs", {}))
        else:
            refs = [str(entry[0]) for entry in node if isinstance(entry, (list, tuple)) and entry]
        for ref in refs:
            if ref not in names:
                names.append(ref)
    return names


def _input_shape(layer_config: Mapping[str, Any], schema: ModelSchema) -> Optional[Tuple[Optional[int], ...]]:
    shape = layer_config.get(schema.layer_field_batch_input_shape)
    if shape is None:
        shape = layer_config.get("batch_shape")
    if shape is None:
        return None
    return tuple(None if d is None else int(d) for d in list(shape)[1:])


def _layer_names_list(value: Any, where: str) -> List[str]:
    if not isinstance(value, (list, tuple)):
        raise ConfigurationError(f"Expected a list for {where}, got {value!r}")
    if value and isinstance(value[0], str):
        return [value[0]]
    return [str(entry[0]) for entry in value]


def _node_config(
    layer: Mapping[str, Any],
    inbound: Sequence[str],
    schema: ModelSchema,
) -> NodeConfig:
    class_name = _require(layer, schema.field_class_name, "layer config")
    params = dict(layer.get(schema.layer_field_config) or {})
    name = _layer_name(layer, schema)
    params.setdefault(schema.layer_field_name, name)
    return NodeConfig(
        name=name,
        class_name=str(class_name),
        inbound=tuple(inbound),
        params=params,
        input_shape=_input_shape(params, schema),
    )


def _parse_sequential(
    layers: Sequence[Mapping[str, Any]],
    schema: ModelSchema,
) -> Tuple[List[NodeConfig], List[str], List[str]]:
    nodes: List[NodeConfig] = []
    previous: Optional[str] = None
    for layer in layers:
        node = _node_config(layer, [] if previous is None else [previous], schema)
        if previous is None and node.class_name not in schema.input_class_names:
            input_name = f"{node.name}_input"
            nodes.append(
                NodeConfig(
                    name=input_name,
                    class_name=schema.input_class_names[0],
                    params={schema.layer_field_name: input_name},
                    input_shape=node.input_shape,
                )
            )
            node = NodeConfig(node.name, node.class_name, (input_name,), node.params, node.input_shape)
        nodes.append(node)
        previous = node.name
    if not nodes:
        raise ConfigurationError("Sequential model has no layers")
    return nodes, [nodes[0].name], [nodes[-1].name]


def parse_model_config(
    model_config: ConfigSource,
    schema: Optional[ModelSchema] = None,
) -> ParsedModel:
    """
    Parse a Keras model configuration (JSON string or mapping).

    Functional models keep their declared layer order; each layer's inbound
    references come from ``inbound_nodes`` (Keras 1/2 nested-list format or
    Keras 3 ``keras_history`` format). Sequential models are chained in order.
    """
    config = _as_mapping(model_config, "model config")
    keras_version = determine_keras_version(config)
    schema = schema or schema_for(keras_version)

    if schema.field_class_name not in config:
        raise ConfigurationError(
            f"Could not determine Keras model class (no {schema.field_class_name!r} field found)"
        )
    class_name = str(config[schema.field_class_name])
    if class_name not in schema.functional_class_names:
        raise ConfigurationError(
            f"Expected model class name in {schema.functional_class_names} (found {class_name!r})"
        )

    body = _require(config, schema.model_field_config, "model config")
    backend = config.get(schema.field_backend)

    if class_name == schema.sequential_class_name:
        layers = body if isinstance(body, list) else _require(body, schema.model_field_layers, "model config")
        nodes, inputs, outputs = _parse_sequential(layers, schema)
        name = None if isinstance(body, list) else body.get(schema.layer_field_name)
        return ParsedModel(class_name, inputs, outputs, nodes, keras_version, backend, name)

    if not isinstance(body, Mapping):
        raise ConfigurationError(f"Model {schema.model_field_config!r} must be an object")
    inputs = _layer_names_list(
        _require(body, schema.model_field_input_layers, "model config"), "input layers"
    )
    outputs = _layer_names_list(
        _require(body, schema.model_field_output_layers, "model config"), "output layers"
    )
    layer_list = _require(body, schema.model_field_layers, "model config")
    nodes = [_node_config(layer, _inbound_names(layer, schema), schema) for layer in layer_list]
    return ParsedModel(class_name, inputs, outputs, nodes, keras_version, backend, body.get(schema.layer_field_name))


# --- Model ---------------------------------------------------------------------


@dataclass
class TrainingConfig:
    """Loss and optimizer settings taken from a Keras training config."""

    losses: Dict[str, str] = field(default_factory=dict)
    optimizer_config: Dict[str, Any] = field(default_factory=dict)


def parse_training_config(
    training_config: ConfigSource,
    outputs: Sequence[str],
    schema: ModelSchema,
) -> TrainingConfig:
    config = _as_mapping(training_config, "training config")
    optimizer = _require(config, schema.training_field_optimizer, "training config")
    if schema.training_field_loss not in config:
        raise ConfigurationError(
            f"Could not determine training loss function (no {schema.training_field_loss!r} "
            "field found in training config)"
        )
    loss = config[schema.training_field_loss]
    losses: Dict[str, str] = {}
    if isinstance(loss, str):
        losses = {name: loss for name in outputs}
    elif isinstance(loss, Mapping):
        for name, value in loss.items():
            if not isinstance(value, str):
                raise ConfigurationError(f"Unknown Keras loss {value!r}")
            losses[str(name)] = value
    elif isinstance(loss, (list, tuple)):
        if len(loss) != len(outputs) or not all(isinstance(v, str) for v in loss):
            raise ConfigurationError(f"Loss list {loss!r} does not match outputs {list(outputs)}")
        losses = dict(zip(outputs, loss))
    else:
        raise ConfigurationError(f"Unknown Keras loss {loss!r}")
    return TrainingConfig(losses=losses, optimizer_config=dict(optimizer))


class KerasModel:
    """
    A Keras functional (or sequential) model configuration imported as a Graph.

    Responsibilities:
      - Parse the model config and, when given, the training config.
      - Append one Loss node per output when a training config is imported,
        making the loss nodes the graph outputs.
      - Build the Graph (forward-reference repair and output-type inference).
    """

    def __init__(
        self,
        model_config: ConfigSource,
        training_config: Optional[ConfigSource] = None,
        enforce_training_config: bool = False,
        input_shape: Optional[Sequence[Optional[int]]] = None,
        schema: Optional[ModelSchema] = None,
        options: Optional[BuildOptions] = None,
    ) -> None:
        parsed = parse_model_config(model_config, schema)
        self.schema = schema or schema_for(parsed.keras_version)
        self.class_name = parsed.class_name
        self.keras_version = parsed.keras_version
        self.keras_backend = parsed.backend
        self.name = parsed.name
        self.enforce_training_config = enforce_training_config
        self.training: Optional[TrainingConfig] = None

        configs = list(parsed.layers)
        outputs = list(parsed.outputs)
        if training_config is not None:
            self.training = parse_training_config(training_config, outputs, self.schema)
            configs, outputs = self._add_loss_layers(configs, self.training)
        elif enforce_training_config:
            logger.warning(
                "enforce_training_config is set but no training configuration was provided; "
                "models saved with model.save('path.h5') carry one, separately stored configs do not."
            )

        base = options or BuildOptions()
        if input_shape is not None:
            base = BuildOptions(
                input_shape=tuple(input_shape),
                strict=base.strict,
                loop_capable_classes=base.loop_capable_classes,
            )
        self.graph: Graph = GraphBuilder(self.schema, base).build(
            configs, inputs=parsed.inputs, outputs=outputs
        )

    def _add_loss_layers(
        self,
        configs: List[NodeConfig],
        training: TrainingConfig,
    ) -> Tuple[List[NodeConfig], List[str]]:
        outputs: List[str] = []
        for output_name, loss in training.losses.items():
            name = f"{output_name}_loss"
            configs.append(
                NodeConfig(
                    name=name,
                    class_name="Loss",
                    inbound=(output_name,),
                    params={self.schema.layer_field_name: name, self.schema.training_field_loss: loss},
                )
            )
            outputs.append(name)
        return configs, outputs

    @property
    def layers(self) -> Dict[str, Node]:
        return dict(self.graph.nodes)

    @property
    def order(self) -> List[str]:
        return self.graph.order

    @property
    def inputs(self) -> List[str]:
        return list(self.graph.inputs)

    @property
    def outputs(self) -> List[str]:
        return list(self.graph.outputs)

    @property
    def output_types(self) -> Dict[str, Optional[OutputType]]:
        return self.graph.output_types

    @property
    def loss_functions(self) -> Dict[str, str]:
        return dict(self.training.losses) if self.training else {}

    @property
    def optimizer_config(self) -> Optional[Dict[str, Any]]:
        return dict(self.training.optimizer_config) if self.training else None


# --- File loading ----------------------------------------------------------------


def _decode_attr(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def load_model_config(path: PathLike) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
    """
    Read ``(model_config, training_config)`` from a Keras ``.h5`` file or a
    ``.json`` model config (which carries no training config).
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Model file not found: {path}")
    if path.suffix.lower() == ".json":
        with path.open("r", encoding="utf-8") as handle:
            return _as_mapping(handle.read(), "model config"), None
    if h5py is None:
        raise ImportError("h5py is required to read Keras HDF5 model files.")
    with h5py.File(path, "r") as archive:
        if "model_config" not in archive.attrs:
            raise ConfigurationError(f"{path} has no 'model_config' attribute")
        model_config = _as_mapping(_decode_attr(archive.attrs["model_config"]), "model config")
        training_config = None
        if "training_config" in archive.attrs:
            training_config = _as_mapping(_decode_attr(archive.attrs["training_config"]), "training config")
    return model_config, training_config


def import_keras_model(
    source: Union[PathLike, ConfigSource],
    training_config: Optional[ConfigSource] = None,
    enforce_training_config: bool = False,
    input_shape: Optional[Sequence[Optional[int]]] = None,
    schema: Optional[ModelSchema] = None,
    options: Optional[BuildOptions] = None,
) -> KerasModel:
    """
    Import from a file path, a JSON string or an already-parsed mapping.

    For HDF5 files the stored training config is used unless one is passed.
    """
    model_config: ConfigSource
    if isinstance(source, Mapping) or isinstance(source, bytes):
        model_config = source
    elif isinstance(source, str) and source.lstrip().startswith("{"):
        model_config = source
    else:
        model_config, stored_training = load_model_config(os.fspath(source))
        if training_config is None:
            training_config = stored_training
    return KerasModel(
        model_config,
        training_config=training_config,
        enforce_training_config=enforce_training_config,
        input_shape=input_shape,
        schema=schema,
        options=options,
    )
