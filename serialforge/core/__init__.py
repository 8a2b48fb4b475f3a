"""
SerialForge core: canon, arcs, beats, memory, context assembly, quality gate
and the Runner. Import from the submodules directly; the Runner depends on
the services package, which in turn depends on the core data types.
"""
