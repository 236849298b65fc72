from setuptools import setup, find_packages

setup(
    name="agentbrowser",
    version="0.1.0",
    description="Session-scoped browser automation daemon and CLI for agents",
    author="phisanti",
    author_email="tisalon@outlook.com",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "typer>=0.9.0",
        "rich>=13.0.0",
        "python-dotenv>=1.0.0",
        "psutil>=5.9.0",
        "playwright>=1.40.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "agent-browser=agentbrowser.main:agent_browser",
        ],
    },
    python_requires=">=3.10",
)
