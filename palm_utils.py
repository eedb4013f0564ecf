import cv2
import numpy as np
from collections import namedtuple
from pathlib import Path
from math import ceil, sqrt, pi, floor, atan2


class PalmError(Exception):
    """Base class of the palm detector errors"""

class ConfigError(PalmError):
    """Malformed anchor file, anchor count mismatch, bad model or device setting"""

class InferenceError(PalmError):
    """The inference engine failed or returned tensors of unexpected shape"""

class DegenerateGeometryError(PalmError, ValueError):
    """The keypoints do not define a usable hand frame (zero-length axis, singular transform)"""


# Palm detection keypoints, in the order the model outputs them
PALM_KEYPOINTS = [
    "wrist",        # 0 : center of wrist
    "index_mcp",    # 1 : index finger joint
    "middle_mcp",   # 2 : middle finger joint
    "ring_mcp",     # 3 : ring finger joint
    "little_mcp",   # 4 : little finger joint
    "thumb_cmc",    # 5
    "thumb_mcp",    # 6 : thumb joint
    ]
KP_WRIST = 0
KP_MIDDLE_MCP = 2
NB_KEYPOINTS = len(PALM_KEYPOINTS)
# 4 box values (cx, cy, w, h) followed by NB_KEYPOINTS (x, y) pairs
NB_COORDS = 4 + 2 * NB_KEYPOINTS

# Canonical frame of the region estimation: the source triangle built from the
# keypoints is mapped on TARGET_TRIANGLE, and TARGET_BOX is mapped back.
CANONICAL_SIZE = 256
TARGET_TRIANGLE = np.array([(128, 128), (128, 0), (0, 128)], dtype=np.float32)
TARGET_BOX = np.array([(0, 0), (CANONICAL_SIZE, 0), (CANONICAL_SIZE, CANONICAL_SIZE), (0, CANONICAL_SIZE)], dtype=np.float32)
# Rotation by 90 degrees
R90 = np.array([[0, 1], [-1, 0]], dtype=np.float32)


class HandRegion:
    """
        Attributes:
        pd_score : detection score (sigmoid of the classifier logit)
        pd_box : detection box [cx, cy, w, h], center format, in pixels in the network input frame
        pd_kps : detection keypoints, array of shape (7, 2), in pixels in the network input frame
        anchor_id : index of the anchor the detection comes from
        rect_points_a : the 4 corners of the estimated hand quadrilateral, in pixels in the network input frame
        rect_points : same quadrilateral expressed in the source image
        rotation : angle in radian of the first edge of the quadrilateral with the x-axis
        """
    def __init__(self, pd_score=None, pd_box=None, pd_kps=None, anchor_id=None):
        self.pd_score = pd_score # Palm detection score
        self.pd_box = pd_box # Palm detection box [cx, cy, w, h]
        self.pd_kps = pd_kps # Palm detection keypoints
        self.anchor_id = anchor_id


# Final result, in source image pixels. (x, y) is the top-left corner.
# points: the estimated quadrilateral, rotation: its angle,
# keypoints: the 7 palm keypoints.
BoundingBox = namedtuple('BoundingBox',
        ['x', 'y', 'width', 'height', 'confidence', 'points', 'rotation', 'keypoints'],
        defaults=[None, 0.0, None])


SSDAnchorOptions = namedtuple('SSDAnchorOptions',[
        'num_layers',
        'min_scale',
        'max_scale',
        'input_size_height',
        'input_size_width',
        'anchor_offset_x',
        'anchor_offset_y',
        'strides',
        'aspect_ratios',
        'reduce_boxes_in_lowest_layer',
        'interpolated_scale_aspect_ratio',
        'fixed_anchor_size'])

def calculate_scale(min_scale, max_scale, stride_index, num_strides):
    if num_strides == 1:
        return (min_scale + max_scale) / 2
    return min_scale + (max_scale - min_scale) * stride_index / (num_strides - 1)

def generate_anchors(options):
    """
    options : SSDAnchorOptions
    Returns an array of shape (nb_anchors, 4): [x_center, y_center, w, h], normalized.
    # https://github.com/google/mediapipe/blob/master/mediapipe/calculators/tflite/ssd_anchors_calculator.cc
    """
    anchors = []
    n_strides = len(options.strides)
    layer_id = 0
    while layer_id < n_strides:
        sizes = [] # (scale, aspect_ratio) of each anchor of a feature map cell
        # Consecutive layers with the same stride share their feature map
        last_same_stride_layer = layer_id
        while last_same_stride_layer < n_strides and \
                options.strides[last_same_stride_layer] == options.strides[layer_id]:
            scale = calculate_scale(options.min_scale, options.max_scale, last_same_stride_layer, n_strides)
            if last_same_stride_layer == 0 and options.reduce_boxes_in_lowest_layer:
                sizes += [(0.1, 1.0), (scale, 2.0), (scale, 0.5)]
            else:
                sizes += [(scale, r) for r in options.aspect_ratios]
                if options.interpolated_scale_aspect_ratio > 0:
                    if last_same_stride_layer == n_strides - 1:
                        scale_next = 1.0
                    else:
                        scale_next = calculate_scale(options.min_scale, options.max_scale, last_same_stride_layer+1, n_strides)
                    sizes.append((sqrt(scale * scale_next), options.interpolated_scale_aspect_ratio))
            last_same_stride_layer += 1

        stride = options.strides[layer_id]
        fm_h = ceil(options.input_size_height / stride)
        fm_w = ceil(options.input_size_width / stride)
        for y in range(fm_h):
            y_center = (y + options.anchor_offset_y) / fm_h
            for x in range(fm_w):
                x_center = (x + options.anchor_offset_x) / fm_w
                for scale, ratio in sizes:
                    if options.fixed_anchor_size:
                        anchors.append([x_center, y_center, 1.0, 1.0])
                    else:
                        anchors.append([x_center, y_center, scale * sqrt(ratio), scale / sqrt(ratio)])
        layer_id = last_same_stride_layer
    return np.array(anchors, dtype=np.float32)

def generate_palm_anchors(input_size=192):
    """
    Anchors of the palm detection model: 2016 anchors for a 192x192 input, 896 for 128x128
    # https://github.com/google/mediapipe/blob/master/mediapipe/modules/palm_detection/palm_detection_cpu.pbtxt
    """
    anchor_options = SSDAnchorOptions(num_layers=4,
                            min_scale=0.1484375,
                            max_scale=0.75,
                            input_size_height=input_size,
                            input_size_width=input_size,
                            anchor_offset_x=0.5,
                            anchor_offset_y=0.5,
                            strides=[8, 16, 16, 16],
                            aspect_ratios=[1.0],
                            reduce_boxes_in_lowest_layer=False,
                            interpolated_scale_aspect_ratio=1.0,
                            fixed_anchor_size=True)
    return generate_anchors(anchor_options)

def load_anchors(source):
    """
    source: path of an anchor file or an iterable of lines.
    One anchor per line: 'ax,ay', normalized coordinates, no header.
    Returns a read-only array of shape (nb_anchors, 2).
    """
    if isinstance(source, (str, Path)):
        try:
            with open(source) as f:
                return load_anchors(f)
        except OSError as e:
            raise ConfigError(f"Cannot read anchor file {source}: {e}") from e
    anchors = []
    for line_nb, line in enumerate(source, 1):
        line = line.strip()
        if not line: continue
        values = line.split(",")
        if len(values) != 2:
            raise ConfigError(f"Anchor line {line_nb}: expected 2 values, got {len(values)}: '{line}'")
        try:
            anchors.append([float(v) for v in values])
        except ValueError as e:
            raise ConfigError(f"Anchor line {line_nb}: not a pair of floats: '{line}'") from e
    anchors = np.array(anchors, dtype=np.float32).reshape(-1, 2)
    anchors.setflags(write=False)
    return anchors

def save_anchors(anchors, path):
    with open(path, "w") as f:
        for ax, ay in np.asarray(anchors)[:, :2]:
            f.write(f"{ax:.8f},{ay:.8f}\n")


SIGMOID_MIN = np.nextafter(np.float32(0), np.float32(1))
SIGMOID_MAX = np.nextafter(np.float32(1), np.float32(0))

def sigmoid(x):
    """
    Computed in float64 so that large negative logits don't overflow, then narrowed
    to float32. The result is clipped to [SIGMOID_MIN, SIGMOID_MAX], strictly inside (0, 1),
    since float32 rounds logits above ~17 to 1.0 and very negative ones to 0.0.
    """
    x = np.asarray(x, dtype=np.float64)
    with np.errstate(over="ignore", under="ignore"):
        p = (1 / (1 + np.exp(-x))).astype(np.float32)
    return np.clip(p, SIGMOID_MIN, SIGMOID_MAX)

def decode_bboxes(score_thresh, scores, bboxes, anchors, input_size=192, trace=None):
    """
    scores: classifier logits, shape = [number of anchors] (or [1, N, 1])
    bboxes: regressors, shape = [number of anchors x 18] (or [1, N, 18]),
            18 = 4 (bounding box : (cx,cy,w,h)) + 14 (7 palm keypoints)
            all expressed in pixels relatively to the anchor position
    anchors: shape = [number of anchors x 2 (or 4)], normalized anchor centers
    input_size: size of the square network input
    trace: optional callable receiving diagnostic messages
    Returns the list of HandRegion whose score is above score_thresh,
    with pd_box and pd_kps in pixels in the network input frame.
    """
    scores = np.asarray(scores, dtype=np.float32).reshape(-1)
    nb_anchors = scores.shape[0]
    bboxes = np.asarray(bboxes, dtype=np.float32)
    if bboxes.size != nb_anchors * NB_COORDS:
        raise InferenceError(f"Regressors of shape {bboxes.shape} do not match {nb_anchors} scores x {NB_COORDS} coords")
    bboxes = bboxes.reshape(nb_anchors, NB_COORDS)
    if len(anchors) != nb_anchors:
        raise ConfigError(f"The model outputs {nb_anchors} predictions but {len(anchors)} anchors are loaded")

    if trace is not None and nb_anchors:
        trace(f"Regressors range: {bboxes.min():.3f} to {bboxes.max():.3f} - "
              f"Classificators range: {scores.min():.3f} to {scores.max():.3f}")

    probabilities = sigmoid(scores)
    det_ids = np.flatnonzero(probabilities > score_thresh)
    if det_ids.size == 0: return []

    det_bboxes = bboxes[det_ids]
    # Anchor position in pixels, without the regressed offset
    anchor_centers = np.asarray(anchors, dtype=np.float32)[det_ids, :2] * input_size
    boxes = det_bboxes[:, :4].copy()
    boxes[:, :2] += anchor_centers
    kps = det_bboxes[:, 4:].reshape(-1, NB_KEYPOINTS, 2) + anchor_centers[:, None, :]

    regions = [HandRegion(float(probabilities[i]), boxes[j], kps[j], int(i)) for j, i in enumerate(det_ids)]
    if trace is not None:
        trace(f"{len(regions)} candidates above score threshold {score_thresh}")
    return regions


def center_to_corners(box):
    cx, cy, w, h = box[:4]
    return [cx - w/2, cy - h/2, cx + w/2, cy + h/2]

def iou(box_a, box_b):
    """
    Intersection over union of 2 boxes in corner format [x1, y1, x2, y2]
    """
    inter_w = max(0, min(box_a[2], box_b[2]) - max(box_a[0], box_b[0]))
    inter_h = max(0, min(box_a[3], box_b[3]) - max(box_a[1], box_b[1]))
    intersection = inter_w * inter_h
    area_a = (box_a[2] - box_a[0]) * (box_a[3] - box_a[1])
    area_b = (box_b[2] - box_b[0]) * (box_b[3] - box_b[1])
    union = area_a + area_b - intersection
    if union <= 0: return 0.0
    return float(intersection / union)

def nms_indices(boxes, scores, nms_thresh=0.3):
    """
    Greedy non maximum suppression.
    boxes : center format boxes [cx, cy, w, h]
    Returns the indices of the kept boxes, sorted by decreasing score
    (ties keep the original order).
    """
    if len(boxes) == 0: return []
    # cv2.dnn.NMSBoxes needs boxes = [ [x, y, w, h], ...] with (x, y) the top left corner
    xywh = [[float(cx - w/2), float(cy - h/2), float(w), float(h)] for cx, cy, w, h in (b[:4] for b in boxes)]
    indices = cv2.dnn.NMSBoxes(xywh, [float(s) for s in scores], 0, nms_thresh)
    return [int(i) for i in np.array(indices).reshape(-1)]

def non_max_suppression(regions, nms_thresh=0.3):
    keep = nms_indices([r.pd_box for r in regions], [r.pd_score for r in regions], nms_thresh)
    return [regions[i] for i in keep]


def normalize_radians(angle):
    return angle - 2 * pi * floor((angle + pi) / (2 * pi))

def normalize(vec):
    vec = np.asarray(vec, dtype=np.float32)
    length = np.linalg.norm(vec)
    if not length > 0 or not np.isfinite(length):
        raise DegenerateGeometryError(f"Cannot normalize vector {vec.tolist()} of length {length}")
    return vec / length

def rot90(vec):
    return R90 @ np.asarray(vec, dtype=np.float32)

def solve_affine(src, dst):
    """
    Affine transform (2x3 matrix) mapping the 3 points src on the 3 points dst
    """
    src = np.asarray(src, dtype=np.float32)
    dst = np.asarray(dst, dtype=np.float32)
    u = src[1] - src[0]
    v = src[2] - src[0]
    if abs(float(u[0] * v[1] - u[1] * v[0])) < 1e-6:
        raise DegenerateGeometryError(f"Source points {src.tolist()} are collinear")
    return cv2.getAffineTransform(src, dst)

def invert_affine(mat):
    if abs(np.linalg.det(mat[:, :2])) < 1e-12:
        raise DegenerateGeometryError("Affine transform is not invertible")
    return cv2.invertAffineTransform(mat)

def transform_points(points, mat):
    points = np.expand_dims(np.asarray(points, dtype=np.float64)[:, :2], axis=0)
    return cv2.transform(points, np.asarray(mat, dtype=np.float64))[0]

def get_triangle(kp0, kp2, dist=1):
    """
    Triangle (kp2, kp2 + dist * u, kp2 + dist * u90) where u is the unit
    vector from kp0 to kp2 and u90 is u rotated by 90 degrees.
    """
    dir_v = normalize(np.subtract(kp2, kp0))
    dir_vr = rot90(dir_v)
    kp2 = np.asarray(kp2, dtype=np.float32)
    return np.array([kp2, kp2 + dir_v * dist, kp2 + dir_vr * dist], dtype=np.float32)

def estimate_region(region, box_enlarge=1.5, box_shift=0.2,
                    target_triangle=TARGET_TRIANGLE, target_box=TARGET_BOX):
    """
    Estimates the quadrilateral enclosing the hand from the palm detection.
    The wrist (kp 0) -> middle finger (kp 2) axis gives the orientation.
    A triangle built on this axis is mapped on target_triangle, and target_box
    is mapped back into the network input frame with the inverse transform.
    Sets region.rect_points_a and region.rotation.
    """
    kp0 = np.asarray(region.pd_kps[KP_WRIST], dtype=np.float32)
    kp2 = np.asarray(region.pd_kps[KP_MIDDLE_MCP], dtype=np.float32)
    side = max(region.pd_box[2], region.pd_box[3]) * box_enlarge
    if not side > 0:
        raise DegenerateGeometryError(f"Detection box {list(region.pd_box)} has no positive side")
    source = get_triangle(kp0, kp2, side)
    source -= (kp0 - kp2) * box_shift

    mat = solve_affine(source, target_triangle)
    inv = invert_affine(mat)
    region.rect_points_a = transform_points(target_box, inv)
    (x0, y0), (x1, y1) = region.rect_points_a[:2]
    region.rotation = normalize_radians(atan2(y1 - y0, x1 - x0))
    return region

def square_padding(img_w, img_h):
    """
    The image is padded into a centered square before being resized to the network input.
    Returns (frame_size, pad_w, pad_h), pad_w and pad_h being the left and top paddings.
    """
    frame_size = max(img_w, img_h)
    return frame_size, (frame_size - img_w) // 2, (frame_size - img_h) // 2

def region_to_box(region, img_w, img_h, input_size=192):
    """
    Converts a region processed by estimate_region() into a BoundingBox in
    the source image (img_w x img_h).
    The box is the axis aligned envelope of the quadrilateral (for a non rotated
    quadrilateral, its corners 0, 1, 2 give x, y, width, height), clipped to the image.
    Returns None if nothing is left inside the image.
    """
    frame_size, pad_w, pad_h = square_padding(img_w, img_h)
    scale = frame_size / input_size
    offset = np.array([pad_w, pad_h], dtype=np.float64)
    region.rect_points = region.rect_points_a * scale - offset
    keypoints = np.asarray(region.pd_kps, dtype=np.float64) * scale - offset

    x1, y1 = np.clip(region.rect_points.min(axis=0), 0, (img_w, img_h))
    x2, y2 = np.clip(region.rect_points.max(axis=0), 0, (img_w, img_h))
    if x2 <= x1 or y2 <= y1:
        return None
    return BoundingBox(float(x1), float(y1), float(x2 - x1), float(y2 - y1), region.pd_score,
                       points=region.rect_points, rotation=region.rotation, keypoints=keypoints)


def draw_boxes(img, boxes, color=(0,255,0), thickness=8):
    img = img.copy()
    for box in boxes:
        cv2.rectangle(img, (int(box.x), int(box.y)), (int(box.x + box.width), int(box.y + box.height)), color, thickness)
    return img

def mask_outside_boxes(img, boxes):
    """
    Returns a copy of img where everything outside the boxes is black
    """
    masked = np.zeros_like(img)
    for box in boxes:
        x1, y1 = int(box.x), int(box.y)
        x2, y2 = int(box.x + box.width), int(box.y + box.height)
        masked[y1:y2, x1:x2] = img[y1:y2, x1:x2]
    return masked
