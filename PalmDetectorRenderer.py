import cv2
import numpy as np
from pathlib import Path
import palm_utils as pu


class PalmDetectorRenderer:
    """
    Draws the palm detections on the source images.
    Arguments:
    - output: directory where the rendered images are saved (not saved if None),
    - show_mask: boolean, when True everything outside the boxes is blacked out.
    """
    def __init__(self,
                output=None,
                show_mask=False):

        # Rendering flags
        self.show_pd_box = True
        self.show_pd_kps = False
        self.show_rot_rect = False
        self.show_scores = False
        self.show_mask = show_mask

        if output is None:
            self.output = None
        else:
            self.output = Path(output)
            self.output.mkdir(parents=True, exist_ok=True)

    def draw_box(self, box):
        # thick_coef adapts the size of the drawn features to the size of the hand
        thick_coef = max(box.width, box.height) / 400
        thickness = int(2 + thick_coef)
        box_tl = (int(box.x), int(box.y))
        box_br = (int(box.x + box.width), int(box.y + box.height))
        if self.show_pd_box:
            cv2.rectangle(self.frame, box_tl, box_br, (0,255,0), thickness)
        if self.show_rot_rect and box.points is not None:
            cv2.polylines(self.frame, [np.array(box.points).astype(np.int32)], True, (0,255,255), thickness, cv2.LINE_AA)
        if self.show_pd_kps and box.keypoints is not None:
            radius = int(2 + thick_coef*4)
            for i, (x, y) in enumerate(box.keypoints):
                cv2.circle(self.frame, (int(x), int(y)), radius, (0,0,255), -1)
                cv2.putText(self.frame, str(i), (int(x), int(y)+12), cv2.FONT_HERSHEY_PLAIN, 1.5, (0,255,0), 2)
        if self.show_scores:
            cv2.putText(self.frame, f"Palm score: {box.confidence:.2f}",
                    (box_tl[0], box_br[1]+40),
                    cv2.FONT_HERSHEY_PLAIN, 2 + thick_coef, (255,255,0), 2)

    def draw(self, frame, boxes):
        self.frame_source = frame.copy()
        self.boxes = boxes
        if self.show_mask:
            self.frame = pu.mask_outside_boxes(frame, boxes)
        else:
            self.frame = frame.copy()
        for box in boxes:
            self.draw_box(box)
        return self.frame

    def save(self, name):
        if self.output:
            path = self.output / name
            cv2.imwrite(str(path), self.frame)
            print(f"Rendered image saved in {path}")

    def waitKey(self, delay=0):
        """
        Shows the rendered frame. The keys 1 to 5 toggle the rendering flags and redraw the frame.
        """
        while True:
            cv2.imshow("Palm detection", self.frame)
            key = cv2.waitKey(delay)
            if key == ord('1'):
                self.show_pd_box = not self.show_pd_box
            elif key == ord('2'):
                self.show_pd_kps = not self.show_pd_kps
            elif key == ord('3'):
                self.show_rot_rect = not self.show_rot_rect
            elif key == ord('4'):
                self.show_scores = not self.show_scores
            elif key == ord('5'):
                self.show_mask = not self.show_mask
            elif key == ord('s'):
                print("Snapshot saved in snapshot.jpg")
                cv2.imwrite("snapshot.jpg", self.frame)
                cv2.imwrite("snapshot_src.jpg", self.frame_source)
            else:
                return key
            self.draw(self.frame_source, self.boxes)

    def exit(self):
        cv2.destroyAllWindows()
