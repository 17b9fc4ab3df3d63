"""Standard modules: the clock and dns matchers and the close and echo handlers."""