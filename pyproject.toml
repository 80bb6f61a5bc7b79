[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "raopstream"
version = "0.1.0"
description = "Building blocks for receiving AirPlay-style RTP audio and H.264 screen-mirroring streams"
requires-python = ">=3.10"
dependencies = []
keywords = ["airplay", "raop", "rtp", "h264", "mirroring", "audio", "streaming"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Multimedia :: Video :: Display",
    "Topic :: Multimedia :: Sound/Audio",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["raopstream"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
