"""
Decision Delegate Module

Hands each cycle's signals to an external agent for review.
The agent can only approve, redirect or reject signals and propose a
time-boxed parameter adjustment - never bypass the Risk Manager.
"""
