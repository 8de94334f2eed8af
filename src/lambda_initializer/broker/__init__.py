"""Custom resource broker shipped as its own Lambda asset."""
