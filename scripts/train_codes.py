modelName = 'codes_iter1'

args = {}
args['outputDir'] = 'logs/' + modelName
args['adapt_model'] = 'exp/adapt.nnet'
args['back_model'] = 'exp/back.nnet'
args['feature_transform'] = 'exp/final.feature_transform'
args['features'] = 'data/train_feats.pkl'
args['alignments'] = 'data/train_ali.pkl'
args['set2utt'] = 'data/train/spk2utt'
args['codes'] = 'exp/code_init.pkl'

args['bunch_size'] = 512
args['cache_size'] = 32768
args['seed'] = 777
args['randomize'] = True
args['shuffle'] = True
args['max_frames'] = 6000

# Learn the speaker codes and the code projection, keep the affine weights
args['update_weight'] = False
args['update_code_xform'] = True
args['update_code_vec'] = True
args['learn_rate'] = 0.008
args['code_learn_rate'] = 0.002
args['momentum'] = 0.5
args['l2_penalty'] = 0.0

args['out_adapt_filename'] = args['outputDir'] + '/adapt_iter1.nnet'
args['code_out'] = args['outputDir'] + '/code_iter1.pkl'

args['device'] = 'auto'
args['wandb_mode'] = 'online'

from code_adapt.code_trainer import trainCodes

trainCodes(args)
