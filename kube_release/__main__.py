"""Run the kube-release command line tool."""

from kube_release.tool.kube_release import main

if __name__ == "__main__":
    main()
