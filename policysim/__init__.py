"""Policy Move Simulator.

Predicts the Azure Policy compliance impact of moving a subscription under
a different management group, before the move is performed.
"""

__version__ = "0.1.0"
