"""
The DDA proteomics pipeline built on the dataflow engine.
"""
