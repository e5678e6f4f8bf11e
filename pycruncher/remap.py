# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

# pyre-strict

import typing


# Skipping 0 since it is used as a (null) marker
FIRST_ID = 1


class IdRemapper:
    """
    Replaces sparse original ids with dense sequential ones, assigned in the
    order the original ids are first seen. Id 0 means null and always maps to
    itself. A mapping never changes once assigned.
    """

    def __init__(self) -> None:
        self._ids: typing.Dict[int, int] = {}
        self._next_id: int = FIRST_ID

    def map(self, original_id: int) -> int:
        if original_id == 0:
            return 0
        mapped = self._ids.get(original_id)
        if mapped is None:
            mapped = self._next_id
            self._ids[original_id] = mapped
            self._next_id += 1
        return mapped

    def lookup(self, original_id: int) -> int:
        """Like map, but raises KeyError for an id that was never mapped."""
        if original_id == 0:
            return 0
        return self._ids[original_id]

    def __contains__(self, original_id: int) -> bool:
        return original_id == 0 or original_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)
