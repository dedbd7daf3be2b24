"""
Package providing `k2-fsa <https://github.com/k2-fsa/k2>`_ based training
graph compilation.

Intended loading manner:

    >>> import traingraphs.k2_integration as tgk2
    >>> # Then use: tgk2.graph_compiler.TrainingGraphCompiler for example

"""

try:
    import k2  # noqa
except ImportError as e:
    MSG = "Please install k2 to compile training graphs\n"
    MSG += "Checkout: https://k2-fsa.github.io/k2/installation/from_wheels.html"
    raise ImportError(MSG) from e
