"""Reference designers."""

from .two_arm import MIN_SAMPLE_SIZE, TwoArmDesign, TwoArmTrialDesigner

__all__ = ["MIN_SAMPLE_SIZE", "TwoArmDesign", "TwoArmTrialDesigner"]
