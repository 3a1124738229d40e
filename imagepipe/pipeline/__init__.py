"""
Image Processing Pipeline

Per job:
1. Load source - read the original upload from storage
2. Analysis - optional AI analysis for a suggested crop region
3. Versions - generate master, grid, PDP and thumbnail outputs
4. Finalize - attach versions and mark the job COMPLETED
"""
