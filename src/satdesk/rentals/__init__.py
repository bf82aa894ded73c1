"""Satellite Device Rentals Module.

This module coordinates short-term rentals of satellite communicators
across SatDesk operator accounts:
- Rental orders moving through a strict state machine
- Conflict-free device claims, ranking and bulk allocation
- Cleanup checklist gate before returned devices are re-used
- Deadline, stock and backlog alerts

Architecture: Clean Architecture with Hexagonal (Ports & Adapters)
"""
