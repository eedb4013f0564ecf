#!/usr/bin/env python3

from pathlib import Path
import argparse
import cv2
from PalmDetector import PalmDetector
from PalmDetectorRenderer import PalmDetectorRenderer
from palm_utils import PalmError

parser = argparse.ArgumentParser()
parser_detector = parser.add_argument_group("Detector arguments")
parser_detector.add_argument('-i', '--input', type=str, nargs='+', required=True,
                    help="Path(s) of the image file(s) to process")
parser_detector.add_argument("--pd_model", type=str,
                    help="Path to the palm detection model (.tflite/.onnx for cpu, .blob for oak)")
parser_detector.add_argument("--anchors", type=str,
                    help="Path to the anchor file (if not specified, anchors are generated)")
parser_detector.add_argument("-d", "--device", choices=['cpu', 'oak'], default='cpu',
                    help="Inference device: 'cpu' (OpenCV dnn) or 'oak' (OAK device) (default=%(default)s)")
parser_detector.add_argument("--score_thresh", type=float, default=0.5,
                    help="Palm detection score threshold (default=%(default)s)")
parser_detector.add_argument("--nms_thresh", type=float, default=0.3,
                    help="Non maximum suppression threshold (default=%(default)s)")
parser_detector.add_argument("-n", "--max_detections", type=int, default=1,
                    help="Max number of detected hands per image (default=%(default)i)")
parser_detector.add_argument("--box_enlarge", type=float, default=1.5,
                    help="Size of the hand box relatively to the palm box (default=%(default)s)")
parser_detector.add_argument("--box_shift", type=float, default=0.2,
                    help="Shift of the hand box toward the fingers (default=%(default)s)")
parser_detector.add_argument('-t', '--trace', type=int, nargs="?", const=1, default=0,
                    help="Print some debug infos. The type of info depends on the optional argument.")
parser_renderer = parser.add_argument_group("Renderer arguments")
parser_renderer.add_argument('-m', '--mask', action="store_true",
                    help="Black out everything outside the detected hands")
parser_renderer.add_argument('-o', '--output',
                    help="Directory where the rendered images are saved")
parser_renderer.add_argument('--no_display', action="store_true",
                    help="Don't display the rendered images")
args = parser.parse_args()

detector = PalmDetector(
        pd_model=args.pd_model,
        anchors=args.anchors,
        device=args.device,
        pd_score_thresh=args.score_thresh,
        pd_nms_thresh=args.nms_thresh,
        max_detections=args.max_detections,
        box_enlarge=args.box_enlarge,
        box_shift=args.box_shift,
        stats=True,
        trace=args.trace,
        )

renderer = PalmDetectorRenderer(
        output=args.output,
        show_mask=args.mask)

for input_path in args.input:
    frame = cv2.imread(input_path)
    if frame is None:
        print(f"Error: cannot read image {input_path}")
        continue
    try:
        boxes = detector.detect(frame)
    except PalmError as e:
        print(f"Error: detection failed on {input_path}: {e}")
        continue
    if not boxes:
        print(f"{input_path}: no hand detected")
    for box in boxes:
        print(f"{input_path}: hand x={box.x:.0f} y={box.y:.0f} w={box.width:.0f} h={box.height:.0f} score={box.confidence:.2f}")
    renderer.draw(frame, boxes)
    renderer.save(Path(input_path).name)
    if not args.no_display:
        key = renderer.waitKey(delay=0)
        if key == 27 or key == ord('q'):
            break
renderer.exit()
detector.exit()
