#!/usr/bin/env python3
# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

# Base class for the harness's typed records.  Every value that crosses a
# module boundary (symlink snapshots, multipath status, partition specs,
# scenario results) is a `Shape`, so it validates on construction, is
# hashable, and serializes to JSON for the result markers.

import pydantic


class Shape(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in self)
        return f"{type(self).__name__}({fields})"
