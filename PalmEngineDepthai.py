import threading
from pathlib import Path
import numpy as np
import depthai as dai
import palm_utils as pu


class DepthaiEngine:
    """
    Runs the palm detection blob on an OAK device, in host mode:
    the normalized tensor is sent to the device and the 2 output layers are read back.
    Arguments:
    - model_path: palm detection blob file, compiled without normalization (fp16 input),
    - input_size: size of the square network input,
    - input_layer: name of the input layer of the blob.
    """
    def __init__(self, model_path, input_size=192, input_layer="input_1"):
        if not Path(model_path).exists():
            raise pu.ConfigError(f"Palm detection blob not found: {model_path}")
        print(f"Palm detection blob : {model_path}")
        self.input_size = input_size
        self.input_layer = input_layer
        try:
            self.device = dai.Device()
            usb_speed = self.device.getUsbSpeed()
            self.device.startPipeline(self.create_pipeline(str(model_path)))
        except RuntimeError as e:
            raise pu.InferenceError(f"Cannot start the OAK device: {e}") from e
        print(f"Pipeline started - USB speed: {str(usb_speed).split('.')[-1]}")
        self.q_pd_in = self.device.getInputQueue(name="pd_in")
        self.q_pd_out = self.device.getOutputQueue(name="pd_out", maxSize=4, blocking=True)
        self.lock = threading.Lock()

    def create_pipeline(self, model_path):
        print("Creating pipeline...")
        pipeline = dai.Pipeline()
        pipeline.setOpenVINOVersion(version = dai.OpenVINO.Version.VERSION_2021_4)

        print("Creating Palm Detection Neural Network...")
        pd_nn = pipeline.createNeuralNetwork()
        pd_nn.setBlobPath(model_path)
        pd_in = pipeline.createXLinkIn()
        pd_in.setStreamName("pd_in")
        pd_in.out.link(pd_nn.input)
        pd_out = pipeline.createXLinkOut()
        pd_out.setStreamName("pd_out")
        pd_nn.out.link(pd_out.input)

        print("Pipeline created.")
        return pipeline

    def infer(self, tensor):
        nn_data = dai.NNData()
        # Planar layout expected by the blob
        nn_data.setLayer(self.input_layer, tensor.transpose(0, 3, 1, 2).flatten().tolist())
        try:
            with self.lock:
                self.q_pd_in.send(nn_data)
                inference = self.q_pd_out.get()
            regressors = np.array(inference.getLayerFp16("regressors"), dtype=np.float32)
            classificators = np.array(inference.getLayerFp16("classificators"), dtype=np.float32)
        except RuntimeError as e:
            raise pu.InferenceError(f"Palm detection inference failed on device: {e}") from e
        if regressors.size != classificators.size * pu.NB_COORDS:
            raise pu.InferenceError(f"{regressors.size} regressor values for {classificators.size} classificators")
        return regressors.reshape(-1, pu.NB_COORDS), classificators

    def close(self):
        self.device.close()
