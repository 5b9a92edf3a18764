"""Detection module: max-margin sliding-window detector.

  - Small fully-convolutional scorer evaluated over a 3/4-step image pyramid
  - Detector windows and NMS thresholds derived from the training boxes
  - Hinge-style MMOD loss with loss-augmented inference
  - SGD trainer that shrinks the learning rate when the loss stops falling
"""

__all__ = ["config", "rects", "options", "model", "loss", "data", "train"]
