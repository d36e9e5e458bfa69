"""
Trust layer: medication, dose, citation and contradiction checks combined
into the four-stage validation pipeline.
"""
