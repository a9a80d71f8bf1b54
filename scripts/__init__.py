"""
tapforge - Script Compilation

Opcodes, script (de)compilation, the envelope and multisig leaf compilers,
feature records and Taproot script trees.
"""
