"""Leaf-first propagation of submodule updates across GitHub and Azure DevOps repositories."""

__version__ = '1.0.0'
