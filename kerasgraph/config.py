# kerasgraph/config.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass(frozen=True)
class ModelSchema:
    """
    Field names and class names used by a Keras model configuration.

    Keras 1 and Keras 2 disagree on a handful of layer field names; everything
    that reads a config takes a schema explicitly instead of consulting
    module-level constants.
    """

    keras_version: int = 2

    # Model level
    field_class_name: str = "class_name"
    model_field_config: str = "config"
    model_field_layers: str = "layers"
    model_field_input_layers: str = "input_layers"
    model_field_output_layers: str = "output_layers"
    field_keras_version: str = "keras_version"
    field_backend: str = "backend"
    model_class_names: Tuple[str, ...] = ("Model", "Functional")
    sequential_class_name: str = "Sequential"

    # Layer level
    layer_field_name: str = "name"
    layer_field_config: str = "config"
    layer_field_inbound_nodes: str = "inbound_nodes"
    layer_field_batch_input_shape: str = "batch_input_shape"
    layer_field_units: str = "units"
    layer_field_padding: str = "padding"
    layer_field_data_format: str = "data_format"
    layer_field_strides: str = "strides"
    layer_field_pool_size: str = "pool_size"
    layer_field_axis: str = "axis"
    layer_field_output_shape: str = "output_shape"
    layer_field_return_sequences: str = "return_sequences"

    # Layer class names with special handling
    input_class_names: Tuple[str, ...] = ("InputLayer",)
    lambda_class_names: Tuple[str, ...] = ("Lambda",)

    # Data-format values
    channels_last_values: Tuple[str, ...] = ("channels_last", "tf")
    channels_first_values: Tuple[str, ...] = ("channels_first", "th")

    # Training configuration
    training_field_loss: str = "loss"
    training_field_optimizer: str = "optimizer_config"

    @property
    def functional_class_names(self) -> Tuple[str, ...]:
        return self.model_class_names + (self.sequential_class_name,)

    def is_channels_last(self, value: Optional[str], default: bool = True) -> bool:
        if value is None:
            return default
        if value in self.channels_last_values:
            return True
        if value in self.channels_first_values:
            return False
        raise ValueError(f"Unknown data format {value!r}")


KERAS2_SCHEMA = ModelSchema()

KERAS1_SCHEMA = ModelSchema(
    keras_version=1,
    model_class_names=("Model",),
    layer_field_units="output_dim",
    layer_field_padding="border_mode",
    layer_field_data_format="dim_ordering",
    layer_field_strides="subsample",
)


def schema_for(keras_version: int) -> ModelSchema:
    """Return the schema matching a Keras major version (1 or 2+)."""
    if keras_version < 1:
        raise ValueError(f"Invalid Keras major version {keras_version}")
    return KERAS1_SCHEMA if keras_version == 1 else KERAS2_SCHEMA


@dataclass(frozen=True)
class BuildOptions:
    """
    Options for a single graph build.

    Attributes:
      input_shape: Per-example shape given to input nodes that do not declare
        one (mirrors passing an explicit input shape to the importer).
      strict: Validate the finished graph (every inbound reference declared,
        every non-input node typed) before returning it.
    """

    input_shape: Optional[Tuple[Optional[int], ...]] = None
    strict: bool = False
    loop_capable_classes: Tuple[str, ...] = field(default=())
