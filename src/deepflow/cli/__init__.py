"""Deepflow command line interface."""
