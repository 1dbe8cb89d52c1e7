"""
Model Lifecycle – Inference Engine Boundary

The inference engine is an external collaborator. This module only
defines the narrow interface the lifecycle core depends on, plus an
ONNX Runtime adapter.

ENGINE CONTRACT:
- open(bytes) -> engine handle, or raise MalformedAssetError
- infer(engine handle, input) -> output (opaque to the core)
- close(engine handle) releases native resources

WHAT THIS IS NOT:
- Tensor preprocessing (input layout is the caller's concern)
- Output decoding (labels, boxes are the caller's concern)
"""

from typing import Any, Callable, Dict, List, Optional, Protocol

import numpy as np


class MalformedAssetError(Exception):
    """Raised by an engine when the asset bytes cannot be opened."""


class InferenceEngine(Protocol):
    """Structural interface implemented by inference engines."""

    def open(self, data: bytes) -> Any:
        ...

    def infer(self, engine_handle: Any, input_data: Any) -> Any:
        ...

    def close(self, engine_handle: Any) -> None:
        ...


class OnnxRuntimeEngine:
    """
    ONNX Runtime engine adapter.

    Sessions are created directly from the in-memory asset bytes, so no
    second copy of the model is written to disk.

    THREAD SAFETY:
    - onnxruntime.InferenceSession.run is safe to call concurrently
    """

    def __init__(
        self,
        providers: Optional[List[str]] = None,
        device: str = "cpu",
        session_factory: Optional[Callable[..., Any]] = None,
    ):
        """
        Args:
            providers: Explicit execution providers (overrides device)
            device: "cuda" or "cpu"; cuda falls back to CPU inside onnxruntime
            session_factory: Called as factory(data, providers=...) to build a
                session (default: onnxruntime.InferenceSession)
        """
        if providers is None:
            if device == "cuda":
                providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]
            else:
                providers = ["CPUExecutionProvider"]
        self.providers = providers
        self._session_factory = session_factory

    def open(self, data: bytes) -> Any:
        """
        Create an inference session from model bytes.

        Raises:
            RuntimeError: If onnxruntime is not installed
            MalformedAssetError: If the bytes are not a loadable model
        """
        factory = self._session_factory or _onnxruntime_session_factory()

        try:
            return factory(data, providers=self.providers)
        except Exception as e:
            raise MalformedAssetError(f"ONNX Runtime rejected model bytes: {e}") from e

    def infer(self, engine_handle: Any, input_data: Any) -> List[np.ndarray]:
        """
        Run one inference.

        Args:
            engine_handle: Session returned by open()
            input_data: Array for the first model input, or a dict of
                input name -> array

        Returns:
            List of output arrays in model output order
        """
        if isinstance(input_data, dict):
            feeds: Dict[str, Any] = {
                name: np.asarray(value) for name, value in input_data.items()
            }
        else:
            input_name = engine_handle.get_inputs()[0].name
            feeds = {input_name: np.asarray(input_data, dtype=np.float32)}

        return engine_handle.run(None, feeds)

    def close(self, engine_handle: Any) -> None:
        # ONNX Runtime frees the session when the last reference goes away
        pass


def _onnxruntime_session_factory() -> Callable[..., Any]:
    try:
        import onnxruntime as ort
    except ImportError as e:
        raise RuntimeError(
            "ONNX Runtime not available. Install with: pip install onnxruntime or onnxruntime-gpu"
        ) from e
    return ort.InferenceSession
