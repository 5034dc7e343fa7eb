"""kforge -- reproducible GKI kernel builds for a single device target.

Synchronises the source trees a build needs, mutates the defconfig,
applies the patch chain, drives the external ``make`` build, and packages
the resulting ``Image`` into a versioned AnyKernel3 zip.
"""

__version__ = "0.1.0"
