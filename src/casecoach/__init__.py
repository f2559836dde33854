"""
CaseCoach

Real-time streaming backend for case-interview practice: accumulates
audio/video chunks per question and runs a one-shot analysis pipeline.
"""

__version__ = "0.1.0"
