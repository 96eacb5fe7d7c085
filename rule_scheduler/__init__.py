# rule_scheduler/__init__.py
"""Pattern-driven rule generation, predictive scheduling and resource optimization"""

__version__ = "1.0.0"
