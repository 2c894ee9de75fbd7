"""Booking lifecycle. Import submodules directly; this package stays empty to keep imports acyclic."""
