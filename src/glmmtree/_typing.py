"""Shared type aliases for the glmmtree package."""

# (number of groups, random-effect dimension) per random term.
ReStruct = list[tuple[int, int]]
