"""Approval gate guarding delivery of processed images."""

from .approval_gate import ApprovalGate, GateAction, GateDecision

__all__ = ["ApprovalGate", "GateAction", "GateDecision"]
