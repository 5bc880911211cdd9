# common/__init__.py
# Wire vocabulary shared by the relay (server/) and the peers (client/).
