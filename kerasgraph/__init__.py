# kerasgraph/__init__.py

from .config import (
    BuildOptions,
    ModelSchema,
    KERAS1_SCHEMA,
    KERAS2_SCHEMA,
    schema_for,
)
from .errors import (
    KerasGraphError,
    ConfigurationError,
    UnsupportedTopologyError,
    ShapeInferenceError,
)
from .layers import OutputType, LayerSpec, register_layer, get_layer_spec
from .graph import Graph, GraphBuilder, Node, NodeConfig, build_graph
from .ranking import nearest_nodes, rank_by_distance, ScoredNode
from .pooling import PoolingType, GlobalPooling, masked_pool, pool
from .keras import (
    KerasModel,
    ParsedModel,
    TrainingConfig,
    parse_model_config,
    parse_training_config,
    determine_keras_version,
    load_model_config,
    import_keras_model,
)
from . import masks

__all__ = [
    "BuildOptions",
    "ModelSchema",
    "KERAS1_SCHEMA",
    "KERAS2_SCHEMA",
    "schema_for",
    "KerasGraphError",
    "ConfigurationError",
    "UnsupportedTopologyError",
    "ShapeInferenceError",
    "OutputType",
    "LayerSpec",
    "register_layer",
    "get_layer_spec",
    "Graph",
    "GraphBuilder",
    "Node",
    "NodeConfig",
    "build_graph",
    "nearest_nodes",
    "rank_by_distance",
    "ScoredNode",
    "PoolingType",
    "GlobalPooling",
    "masked_pool",
    "pool",
    "KerasModel",
    "ParsedModel",
    "TrainingConfig",
    "parse_model_config",
    "parse_training_config",
    "determine_keras_version",
    "load_model_config",
    "import_keras_model",
    "masks",
]
