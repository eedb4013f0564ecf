import threading
import numpy as np
import cv2
from pathlib import Path
from math import pi
import palm_utils as pu
from PalmEngine import OpenCVEngine, now


SCRIPT_DIR = Path(__file__).resolve().parent
PALM_DETECTION_MODEL = str(SCRIPT_DIR / "models/palm_detection_full.tflite")
PALM_DETECTION_BLOB = str(SCRIPT_DIR / "models/palm_detection_full_sh4.blob")
PALM_ANCHORS = SCRIPT_DIR / "models/anchors.csv"

# Above this angle, the axis aligned box is a loose envelope of the hand quadrilateral
ROTATION_WARNING_THRESH = pi / 12


class PalmDetector:
    """
    Palm detector on still images
    Arguments:
    - pd_model: palm detection model file (.tflite or .onnx for device "cpu", .blob for device "oak"),
                    if None, the default model of the device is used,
    - anchors: path of an anchor file ('ax,ay' per line), or an array of anchors.
                    If None, models/anchors.csv is used when it exists, otherwise
                    the SSD anchors of the model are generated,
    - engine: object with infer(tensor) -> (regressors, classificators) and close() methods.
                    When given, pd_model and device are ignored,
    - device: "cpu" (OpenCV dnn) or "oak" (OAK device through depthai),
    - pd_score_thresh: confidence score to determine whether a detection is reliable (a float between 0 and 1),
    - pd_nms_thresh: NMS threshold,
    - max_detections: number of hands kept after NMS (None for all),
    - box_enlarge: size of the hand box relatively to the palm box,
    - box_shift: shift of the hand box along the wrist -> middle finger axis,
    - input_size: size of the square network input,
    - stats: boolean, when True, display some statistics when exiting,
    - trace: int, 0 = no trace, otherwise print some debug messages
            if trace & 1, print the number of candidates and detections of each image
            if trace & 2, print the value ranges of the raw network outputs
    """
    def __init__(self, pd_model=None,
                anchors=None,
                engine=None,
                device="cpu",
                pd_score_thresh=0.5, pd_nms_thresh=0.3,
                max_detections=1,
                box_enlarge=1.5,
                box_shift=0.2,
                input_size=192,
                stats=False,
                trace=0,
                ):

        self.pd_score_thresh = pd_score_thresh
        self.pd_nms_thresh = pd_nms_thresh
        self.max_detections = max_detections
        self.box_enlarge = box_enlarge
        self.box_shift = box_shift
        self.input_size = input_size
        self.stats = stats
        self.trace = trace

        if anchors is None:
            if PALM_ANCHORS.exists():
                anchors = PALM_ANCHORS
            else:
                self.anchors = pu.generate_palm_anchors(self.input_size)
                print(f"{self.anchors.shape[0]} anchors have been created")
        if anchors is not None:
            if isinstance(anchors, (str, Path)):
                self.anchors = pu.load_anchors(anchors)
                print(f"{self.anchors.shape[0]} anchors loaded from {anchors}")
            else:
                self.anchors = np.asarray(anchors, dtype=np.float32)

        if engine is not None:
            self.engine = engine
        elif device == "cpu":
            self.engine = OpenCVEngine(pd_model or PALM_DETECTION_MODEL)
        elif device == "oak":
            from PalmEngineDepthai import DepthaiEngine
            self.engine = DepthaiEngine(pd_model or PALM_DETECTION_BLOB, input_size=self.input_size)
        else:
            raise pu.ConfigError(f"{device} is not a valid device ('cpu' or 'oak')")

        # detect() may be called from several threads
        self.stats_lock = threading.Lock()
        self.nb_frames = 0
        self.nb_frames_no_hand = 0
        self.nb_failed_frames = 0
        self.glob_pd_rtrip_time = 0

    def preprocess(self, img):
        """
        img: BGR image (H x W x 3, uint8)
        Returns the network input: the image padded into a centered square, resized
        to input_size, in RGB, normalized in [-1, 1], shape 1 x S x S x 3
        """
        if img is None or img.ndim != 3 or img.shape[2] != 3:
            raise pu.InferenceError(f"Expected a H x W x 3 image, got shape {None if img is None else img.shape}")
        img_h, img_w = img.shape[:2]
        frame_size, pad_w, pad_h = pu.square_padding(img_w, img_h)
        square_frame = cv2.copyMakeBorder(img, pad_h, frame_size - img_h - pad_h, pad_w, frame_size - img_w - pad_w, cv2.BORDER_CONSTANT)
        frame_nn = cv2.resize(square_frame, (self.input_size, self.input_size), interpolation=cv2.INTER_AREA)
        frame_nn = cv2.cvtColor(frame_nn, cv2.COLOR_BGR2RGB)
        return np.expand_dims(frame_nn.astype(np.float32) / 127.5 - 1, axis=0)

    def infer(self, tensor):
        try:
            regressors, classificators = self.engine.infer(tensor)
        except pu.PalmError:
            raise
        except Exception as e:
            raise pu.InferenceError(f"Palm detection inference failed: {e}") from e
        regressors = np.asarray(regressors, dtype=np.float32)
        classificators = np.asarray(classificators, dtype=np.float32).reshape(-1)
        if regressors.size != classificators.size * pu.NB_COORDS:
            raise pu.InferenceError(f"Regressors of shape {regressors.shape} for {classificators.size} classificators")
        return regressors.reshape(-1, pu.NB_COORDS), classificators

    def pd_postprocess(self, regressors, classificators, img_w, img_h):
        # Decode bboxes
        hands = pu.decode_bboxes(self.pd_score_thresh, classificators, regressors, self.anchors,
                    input_size=self.input_size, trace=print if self.trace & 2 else None)
        if self.trace & 1:
            print(f"Palm detection - nb candidates: {len(hands)}")
        # Non maximum suppression, then keep the best detections
        hands = pu.non_max_suppression(hands, self.pd_nms_thresh)[:self.max_detections]
        boxes = []
        for hand in hands:
            pu.estimate_region(hand, self.box_enlarge, self.box_shift)
            box = pu.region_to_box(hand, img_w, img_h, self.input_size)
            if box is None:
                if self.trace & 1: print("Palm detection - hand region outside of the image, ignored")
                continue
            if self.trace & 1 and abs(box.rotation) > ROTATION_WARNING_THRESH:
                print(f"Palm detection - rotated hand ({box.rotation*180/pi:.0f} deg), box is the envelope of the rotated region")
            boxes.append(box)
        return boxes

    def detect(self, img):
        """
        img: BGR image
        Returns the list of BoundingBox of the detected hands, in pixels in img
        """
        with self.stats_lock:
            self.nb_frames += 1
        tensor = self.preprocess(img)
        img_h, img_w = img.shape[:2]
        pd_rtrip_time = now()
        try:
            regressors, classificators = self.infer(tensor)
        except pu.InferenceError:
            with self.stats_lock:
                self.nb_failed_frames += 1
            raise
        pd_rtrip_time = now() - pd_rtrip_time
        boxes = self.pd_postprocess(regressors, classificators, img_w, img_h)
        if self.trace & 1:
            print(f"Palm detection - nb hands detected: {len(boxes)}")
        with self.stats_lock:
            self.glob_pd_rtrip_time += pd_rtrip_time
            if len(boxes) == 0: self.nb_frames_no_hand += 1
        return boxes

    def detect_and_mask(self, img):
        """
        Returns (boxes, masked image), everything outside the boxes being blacked out
        """
        boxes = self.detect(img)
        return boxes, pu.mask_outside_boxes(img, boxes)

    def detect_and_visualize(self, img):
        boxes = self.detect(img)
        return boxes, pu.draw_boxes(img, boxes)

    def exit(self):
        self.engine.close()
        # Print some stats
        if self.stats and self.nb_frames:
            nb_inferences = self.nb_frames - self.nb_failed_frames
            print(f"# images                      : {self.nb_frames}")
            print(f"# images w/ no hand           : {self.nb_frames_no_hand} ({100*self.nb_frames_no_hand/self.nb_frames:.1f}%)")
            if self.nb_failed_frames:
                print(f"# failed inferences           : {self.nb_failed_frames}")
            if nb_inferences:
                print(f"Palm detection round trip     : {self.glob_pd_rtrip_time/nb_inferences*1000:.1f} ms")
