"""
Writes the SSD anchors of the palm detection model in the text format read
by palm_utils.load_anchors() (one 'ax,ay' line per anchor).
"""
import sys, os
sys.path.insert(1, os.path.realpath(os.path.pardir))
from palm_utils import generate_palm_anchors, save_anchors
import argparse


def export_anchors(input_size, output):
    anchors = generate_palm_anchors(input_size)
    print(f"Nb anchors: {len(anchors)}")
    save_anchors(anchors, output)
    print(f"Anchors saved in {output}")

if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("-s", "--input_size", type=int, default=192,
                        help="Size of the square model input (default=%(default)i)")
    parser.add_argument("-o", "--output", default="../models/anchors.csv",
                        help="Output file (default=%(default)s)")
    args = parser.parse_args()
    export_anchors(args.input_size, args.output)
