"""Model loading/saving and best-effort shape inference."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Optional, Set, Union

import onnx
from onnx import TensorProto, shape_inference

LOGGER = logging.getLogger("onnx_paged_attention_tool.model_io")


def load_model(path: Union[str, Path], *, load_external_data: bool = True) -> onnx.ModelProto:
    return onnx.load(str(path), load_external_data=bool(load_external_data))


def save_model(model: onnx.ModelProto, path: Union[str, Path], *, external_data: bool = False) -> None:
    """Save model to disk (optionally as external data)."""
    path = str(path)
    if external_data:
        onnx.save_model(
            model,
            path,
            save_as_external_data=True,
            all_tensors_to_one_file=True,
            location=os.path.basename(path) + ".data",
            size_threshold=1024,
        )
    else:
        onnx.save(model, path)


def model_external_data_locations(model: onnx.ModelProto) -> List[str]:
    """Return a sorted list of external-data `location` strings used by initializers."""
    locs: Set[str] = set()
    for init in model.graph.initializer:
        if int(getattr(init, "data_location", 0)) != int(TensorProto.EXTERNAL):
            continue
        loc: Optional[str] = None
        for kv in init.external_data:
            if kv.key == "location":
                loc = kv.value
                break
        if loc:
            locs.add(loc)
    return sorted(locs)


def infer_shapes_safe(model: onnx.ModelProto) -> onnx.ModelProto:
    """Try to run ONNX shape inference; return the input model if it fails.

    Custom-domain nodes (paged attention, state ops) have no schema, so inference
    stops at them. The result is still useful for the standard-domain parts.
    """
    try:
        return shape_inference.infer_shapes(model, strict_mode=False)
    except TypeError:
        # Older onnx may not accept strict_mode
        try:
            return shape_inference.infer_shapes(model)
        except Exception as e:
            LOGGER.debug("onnx.shape_inference failed (continuing): %s", e)
    except Exception as e:
        LOGGER.debug("onnx.shape_inference failed (continuing): %s", e)
    return model
