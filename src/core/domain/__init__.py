"""Modelos y reglas del dominio.

Por qué:
- Aquí viven las estructuras de datos puras (Pydantic v2), el naming y la validación.
- El dominio no conoce boto, HTTP ni la CLI: solo la topología de cuentas.
"""
