from sbfbuild.cli import run

run()
