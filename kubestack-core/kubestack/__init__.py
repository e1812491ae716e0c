name = "kubestack"
