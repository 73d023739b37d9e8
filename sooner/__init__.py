"""Sooner: walk-in queue service with live positions and arrival deadlines."""
