"""Backup job orchestration.

This package contains the per-disc backup engine: parsing of MakeMKV robot
output, phase and progress tracking, error classification, process
supervision, post-processing and backup status inspection.
"""
