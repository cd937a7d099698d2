# Copyright (c) 2024 Converge Contributors
# MIT License
