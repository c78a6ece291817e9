# ndc_gateway/__init__.py
"""
Keep this file minimal so 'ndc_gateway' is always a proper package.

Do NOT import submodules here (e.g., don't import main).
Tests and runtime should import from 'ndc_gateway.main' directly:
    from ndc_gateway.main import create_app
And Uvicorn should use:
    uvicorn ndc_gateway.main:app
"""

__version__ = "3.1.0"
