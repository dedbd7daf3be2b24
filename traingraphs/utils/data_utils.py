"""Helpers for nested dictionaries and chunked iteration."""

import collections.abc
import itertools


def recursive_update(d, u, must_match=False):
    """Similar function to `dict.update`, but for a nested `dict`.

    If you have to a nested mapping structure, for example:

        {"a": 1, "b": {"c": 2}}

    Say you want to update the above structure with:

        {"b": {"d": 3}}

    This function will produce:

        {"a": 1, "b": {"c": 2, "d": 3}}

    Instead of:

        {"a": 1, "b": {"d": 3}}

    Arguments
    ---------
    d : dict
        Mapping to be updated.
    u : dict
        Mapping to update with.
    must_match : bool
        Whether to throw an error if the key in `u` does not exist in `d`.

    Example
    -------
    >>> d = {'a': 1, 'b': {'c': 2}}
    >>> recursive_update(d, {'b': {'d': 3}})
    >>> d
    {'a': 1, 'b': {'c': 2, 'd': 3}}
    """
    for k, v in u.items():
        if isinstance(v, collections.abc.Mapping) and k in d:
            recursive_update(d.get(k, {}), v, must_match)
        elif must_match and k not in d:
            raise KeyError(
                f"Override '{k}' not found in: {[key for key in d.keys()]}"
            )
        else:
            d[k] = v


def batched(iterable, batch_size):
    """Groups an iterable into lists of at most `batch_size` items,
    pulling items lazily so that a stream is never read ahead of the
    current group.

    Arguments
    ---------
    iterable : iterable
        Any iterable, e.g. a streaming table reader.
    batch_size : int
        Maximum number of items per group, must be positive.

    Yields
    ------
    list
        The next group; only the last one may be shorter.

    Example
    -------
    >>> list(batched(range(5), 2))
    [[0, 1], [2, 3], [4]]
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    iterator = iter(iterable)
    while True:
        group = list(itertools.islice(iterator, batch_size))
        if not group:
            return
        yield group
