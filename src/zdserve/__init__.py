# This file is needed to make this a package.
