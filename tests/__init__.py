"""Test suite for Dispatch Desk."""
