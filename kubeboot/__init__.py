"""kubeboot - kubeadm cluster bootstrap over a shared-file rendezvous."""

__version__ = "0.1.0"
