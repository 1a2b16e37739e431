"""Core orchestration and background control.

This module contains the session orchestrator that coordinates workspace,
terminal backend and storage, plus the auto-accept loop and the daemon
lifecycle wrapped around it.
"""
