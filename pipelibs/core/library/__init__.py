"""
Library resolution: declarations, transports, revision provider, tree
classifier, classpath contribution, global variable binding and docs.
"""
