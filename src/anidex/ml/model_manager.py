"""Model manager: fetch, load, cache, and evict classifier models.

Classifier weights (ONNX) and their label lists are fetched from the
HuggingFace Hub into the local models directory on first use. Loaded
sessions are shared between requests and dropped once idle for longer
than the configured TTL.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from anidex.config import Settings

logger = logging.getLogger(__name__)

MODELS_REPO_ID = "anidex/anidex-models"
IMAGENET_LABELS = "imagenet_labels.txt"


class ModelManager(Protocol):
    """What the classifier needs from model lifecycle management."""

    def get_session(self, model_name: str) -> InferenceSession: ...

    def get_labels(self, model_name: str) -> list[str]: ...

    def get_loaded_models(self) -> list[str]: ...

    def unload_idle_models(self) -> None: ...

    def shutdown(self) -> None: ...


class ModelTask(StrEnum):
    IMAGE_CLASSIFICATION = "image_classification"


@dataclass(frozen=True)
class ModelSpec:
    """A classifier in the models repository and how to feed it."""

    name: str
    filename: str
    labels_filename: str = IMAGENET_LABELS
    repo_id: str = MODELS_REPO_ID
    task: ModelTask = ModelTask.IMAGE_CLASSIFICATION
    license: str = "Apache-2.0"
    input_size: int = 224


MODEL_REGISTRY: dict[str, ModelSpec] = {
    spec.name: spec
    for spec in (
        ModelSpec(name="mobilenetv3_large", filename="mobilenetv3_large_100.onnx"),
        ModelSpec(name="efficientnet_b0", filename="efficientnet_b0.onnx"),
        ModelSpec(name="convnext_tiny", filename="convnext_tiny.onnx"),
    )
}


def get_model_spec(model_name: str) -> ModelSpec:
    """Look up a model in the registry."""
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


def execution_providers(settings: Settings) -> list[str | tuple[str, dict[str, object]]]:
    """ONNX Runtime providers for the configured device, CPU always last."""
    if settings.device == "cuda":
        cuda_options: dict[str, object] = {
            "device_id": 0,
            "gpu_mem_limit": settings.gpu_mem_limit,
            "arena_extend_strategy": "kSameAsRequested",
        }
        return [("CUDAExecutionProvider", cuda_options), "CPUExecutionProvider"]
    if settings.device == "openvino":
        return [("OpenVINOExecutionProvider", {"device_type": "CPU"}), "CPUExecutionProvider"]
    return ["CPUExecutionProvider"]


def session_options(settings: Settings) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    if settings.device == "openvino":
        # OpenVINO optimizes the graph itself.
        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts


@dataclass
class _LoadedModel:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Fetches classifier assets and keeps their sessions warm until idle."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._loaded: dict[str, _LoadedModel] = {}
        self._labels: dict[str, list[str]] = {}

    def fetch(self, model_name: str, filename: str) -> Path:
        """Return the local path of one of a model's files, downloading it if needed."""
        spec = get_model_spec(model_name)
        path = Path(
            hf_hub_download(
                repo_id=spec.repo_id,
                filename=filename,
                local_dir=str(self._models_dir),
            )
        )
        logger.info("Fetched %s for %s at %s", filename, model_name, path)
        return path

    def get_session(self, model_name: str) -> InferenceSession:
        with self._lock:
            loaded = self._loaded.get(model_name)
            if loaded is not None:
                loaded.last_used = time.monotonic()
                return loaded.session

        spec = get_model_spec(model_name)
        session = InferenceSession(
            str(self.fetch(model_name, spec.filename)),
            sess_options=session_options(self._settings),
            providers=execution_providers(self._settings),
        )

        with self._lock:
            # A concurrent request may have loaded it first; keep that one.
            loaded = self._loaded.setdefault(model_name, _LoadedModel(session, time.monotonic()))
            loaded.last_used = time.monotonic()
            if loaded.session is session:
                logger.info("Loaded %s on %s", model_name, self._settings.device)
            return loaded.session

    def get_labels(self, model_name: str) -> list[str]:
        """Return the model's labels, one per output index."""
        with self._lock:
            labels = self._labels.get(model_name)
            if labels is not None:
                return labels

        spec = get_model_spec(model_name)
        labels_path = self.fetch(model_name, spec.labels_filename)
        labels = [line.strip() for line in labels_path.read_text(encoding="utf-8").splitlines() if line.strip()]
        if not labels:
            raise RuntimeError(f"Label file for '{model_name}' is empty: {labels_path}")

        with self._lock:
            return self._labels.setdefault(model_name, labels)

    def get_loaded_models(self) -> list[str]:
        with self._lock:
            return list(self._loaded)

    def unload_idle_models(self) -> None:
        """Drop sessions unused for longer than ANIDEX_MODEL_TTL (0 keeps them forever)."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        cutoff = time.monotonic() - ttl
        with self._lock:
            for name in [name for name, loaded in self._loaded.items() if loaded.last_used < cutoff]:
                del self._loaded[name]
                logger.info("Unloaded idle model %s", name)

    def shutdown(self) -> None:
        with self._lock:
            self._loaded.clear()
        logger.info("All models unloaded")
