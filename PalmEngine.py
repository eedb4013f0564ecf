import threading
import time
from pathlib import Path
import numpy as np
import cv2
import palm_utils as pu


def now():
    return time.perf_counter()

def split_outputs(outputs):
    """
    Sorts the raw network outputs into (regressors [N, 18], classificators [N]).
    The 2 outputs are told apart by their last dimension.
    """
    regressors = classificators = None
    for out in outputs:
        out = np.asarray(out, dtype=np.float32)
        if out.shape[-1] == pu.NB_COORDS:
            regressors = out.reshape(-1, pu.NB_COORDS)
        elif out.shape[-1] == 1 or out.ndim == 1:
            classificators = out.reshape(-1)
    if regressors is None or classificators is None:
        raise pu.InferenceError(f"Unexpected output shapes: {[np.shape(o) for o in outputs]}")
    if regressors.shape[0] != classificators.shape[0]:
        raise pu.InferenceError(f"{regressors.shape[0]} regressors for {classificators.shape[0]} classificators")
    return regressors, classificators


class OpenCVEngine:
    """
    Runs the palm detection model (.tflite, .onnx,...) with the OpenCV dnn module.
    The network is shared between threads, so inferences are serialized.
    """
    def __init__(self, model_path):
        if not Path(model_path).exists():
            raise pu.ConfigError(f"Palm detection model not found: {model_path}")
        print(f"Palm detection model : {model_path}")
        try:
            if str(model_path).endswith(".tflite"):
                self.net = cv2.dnn.readNetFromTFLite(str(model_path))
            else:
                self.net = cv2.dnn.readNet(str(model_path))
        except cv2.error as e:
            raise pu.ConfigError(f"Cannot load palm detection model {model_path}: {e}") from e
        self.output_names = self.net.getUnconnectedOutLayersNames()
        self.lock = threading.Lock()

    def infer(self, tensor):
        """
        tensor: float32 array 1 x S x S x 3 (RGB, normalized in [-1, 1])
        """
        # OpenCV dnn takes NCHW blobs
        blob = np.ascontiguousarray(tensor.transpose(0, 3, 1, 2))
        try:
            with self.lock:
                self.net.setInput(blob)
                outputs = self.net.forward(self.output_names)
        except cv2.error as e:
            raise pu.InferenceError(f"Palm detection inference failed: {e}") from e
        return split_outputs(outputs)

    def close(self):
        pass
